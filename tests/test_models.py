"""Tests for the data models."""

import json

import pytest
from pydantic import ValidationError

from work_harness.models import (
    ComplexityTier,
    Changeset,
    CheckpointEvent,
    CheckpointFinding,
    FindingSeverity,
    ReviewDimension,
    WorkItem,
    WorkItemState,
    WorkSpec,
)


class TestWorkItem:
    """Tests for WorkItem."""

    def test_defaults(self):
        item = WorkItem(id="a", title="A")
        assert item.state == WorkItemState.PENDING
        assert item.priority == 2
        assert item.priority_label == "P2"
        assert item.depends_on == []
        assert item.history == []

    def test_negative_priority_rejected(self):
        with pytest.raises(ValidationError):
            WorkItem(id="a", title="A", priority=-1)

    def test_json_round_trip_keeps_enums(self):
        item = WorkItem(id="a", title="A", state=WorkItemState.BLOCKED, complexity=ComplexityTier.COMPLEX)
        restored = WorkItem.model_validate(json.loads(item.model_dump_json()))
        assert restored.state == WorkItemState.BLOCKED
        assert restored.complexity == ComplexityTier.COMPLEX

    def test_has_label(self):
        assert WorkItem(id="a", title="A", labels=["blocker"]).has_label("blocker")

    def test_property_tag_alongside_priority_label(self):
        item = WorkItem(id="a", title="A", priority=0, property="shop")
        assert item.property == "shop"
        assert item.priority_label == "P0"
        assert WorkItem.model_validate(json.loads(item.model_dump_json())).property == "shop"


class TestComplexityTier:
    def test_rank_order(self):
        ranks = [t.rank for t in (ComplexityTier.TRIVIAL, ComplexityTier.SIMPLE,
                                  ComplexityTier.STANDARD, ComplexityTier.COMPLEX)]
        assert ranks == [0, 1, 2, 3]


class TestWorkSpec:
    def test_get_item(self):
        spec = WorkSpec(title="T", items=[WorkItem(id="a", title="A")])
        assert spec.get_item("a").title == "A"
        assert spec.get_item("b") is None


class TestChangeset:
    def test_message(self):
        assert Changeset(item_id="a", title="Add cart").message == "Add cart [a]"
        changeset = Changeset(item_id="a", title="Add cart", summary="Totals with tax")
        assert changeset.message == "Add cart [a]\n\nTotals with tax"


class TestCheckpointEvent:
    def test_critical_findings(self):
        event = CheckpointEvent(id="cp-001", trigger="sessions", findings=[
            CheckpointFinding(dimension=ReviewDimension.SECURITY, severity=FindingSeverity.CRITICAL, summary="x"),
            CheckpointFinding(dimension=ReviewDimension.QUALITY, severity=FindingSeverity.INFO, summary="y"),
        ])
        assert [f.summary for f in event.critical_findings] == ["x"]
