"""
L1 Domain — DAG utilities (pure).

Dependency validation, topological ordering and dependent lookup
for plan steps. Works on any object exposing ``id`` and
``depends_on``. No I/O.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol


class _Node(Protocol):
    id: str
    depends_on: Iterable[str]


def validate_dag(steps: Sequence[_Node]) -> list[str]:
    """Validate the step dependency DAG.

    Checks for:
    - Duplicate step IDs
    - References to non-existent step IDs
    - Cycles (Kahn's algorithm)

    Returns:
        List of error strings (empty = valid).
    """
    errors: list[str] = []
    ids = {s.id for s in steps}

    seen: set[str] = set()
    for s in steps:
        if s.id in seen:
            errors.append(f"Duplicate step ID: {s.id}")
        seen.add(s.id)

    for s in steps:
        for dep in sorted(s.depends_on):
            if dep not in ids:
                errors.append(f"Step '{s.id}' depends on unknown step '{dep}'")
            elif dep == s.id:
                errors.append(f"Step '{s.id}' depends on itself")

    if errors:
        return errors

    ordered = _kahn(steps)
    if len(ordered) < len(steps):
        stuck = sorted(s.id for s in steps if s.id not in {o.id for o in ordered})
        errors.append(f"Dependency cycle detected among steps: {', '.join(stuck)}")

    return errors


def topological_order(steps: Sequence[_Node]) -> list:
    """Order steps so every step follows all of its dependencies.

    Ties are broken by declaration order, so a plan that is already
    written in dependency order runs exactly as written.

    Raises:
        ValueError: If the graph has a cycle.
    """
    ordered = _kahn(steps)
    if len(ordered) < len(steps):
        raise ValueError("Dependency cycle detected in plan steps")
    return ordered


def transitive_dependents(steps: Sequence[_Node], step_id: str) -> set[str]:
    """All step IDs that depend on ``step_id``, directly or indirectly."""
    adj = _successors(steps)
    found: set[str] = set()
    stack = list(adj.get(step_id, []))
    while stack:
        sid = stack.pop()
        if sid in found:
            continue
        found.add(sid)
        stack.extend(adj.get(sid, []))
    return found


def _successors(steps: Sequence[_Node]) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = {s.id: [] for s in steps}
    for s in steps:
        for dep in s.depends_on:
            if dep in adj:
                adj[dep].append(s.id)
    return adj


def _kahn(steps: Sequence[_Node]) -> list:
    position = {s.id: i for i, s in enumerate(steps)}
    in_degree = {s.id: 0 for s in steps}
    for s in steps:
        in_degree[s.id] = sum(1 for d in set(s.depends_on) if d in position)

    adj = _successors(steps)
    by_id = {s.id: s for s in steps}
    ready = sorted((sid for sid, deg in in_degree.items() if deg == 0), key=position.__getitem__)
    ordered = []

    while ready:
        node = ready.pop(0)
        ordered.append(by_id[node])
        for successor in adj[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                ready.append(successor)
        ready.sort(key=position.__getitem__)

    return ordered
