"""Dependency graph helpers shared by the spec loader and the scheduler."""

from typing import Iterable, Mapping, Optional, Sequence

from .models import WorkItem


def find_cycle(edges: Mapping[str, Sequence[str]]) -> Optional[list[str]]:
    """Find one dependency cycle.

    Args:
        edges: Map of node id -> ids it depends on. Unknown targets are ignored.

    Returns:
        The cycle as a list of ids whose first and last element are the same,
        or None if the graph is acyclic.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in edges}

    for root in edges:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path = [root]
        pending = [iter(edges.get(root, ()))]
        while pending:
            for dep in pending[-1]:
                if dep not in color:
                    continue
                if color[dep] == GREY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    pending.append(iter(edges.get(dep, ())))
                    break
            else:
                color[path.pop()] = BLACK
                pending.pop()
    return None


def item_edges(items: Iterable[WorkItem]) -> dict[str, list[str]]:
    return {item.id: list(item.depends_on) for item in items}


def topological_order(items: Sequence[WorkItem]) -> list[WorkItem]:
    """Return items in dependency order, stable with respect to declaration order.

    Raises:
        ValueError: If the items contain a dependency cycle.
    """
    by_id = {item.id: item for item in items}
    remaining = {
        item.id: {dep for dep in item.depends_on if dep in by_id}
        for item in items
    }
    ordered: list[WorkItem] = []

    while remaining:
        ready = [
            by_id[item_id] for item_id, deps in remaining.items() if not deps
        ]
        if not ready:
            raise ValueError(f"Dependency cycle among: {sorted(remaining)}")
        ready.sort(key=lambda i: i.order)
        for item in ready:
            ordered.append(item)
            del remaining[item.id]
        done = {item.id for item in ready}
        for deps in remaining.values():
            deps -= done

    return ordered
