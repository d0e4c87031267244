"""Orchestration components for the work harness.

- SessionOrchestrator: executes one work item per session, drives
  verification, checkpoints and discovered-work intake
"""

from .session_orchestrator import SessionOrchestrator

__all__ = [
    "SessionOrchestrator",
]
