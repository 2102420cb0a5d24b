"""Field-level diff between two plan lists, keyed by feature ID."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..plan import Plan


@dataclass(frozen=True)
class PlanChange:
    """One modified field of one feature."""

    id: int
    field: str
    old_value: str
    new_value: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


@dataclass
class PlanDiff:
    """Added, removed and modified features between two plans."""

    added: list[Plan] = field(default_factory=list)
    removed: list[Plan] = field(default_factory=list)
    modified: list[PlanChange] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.added and not self.removed and not self.modified

    def summary(self) -> str:
        """Human-readable summary of the changes."""
        if self.is_empty():
            return "No changes detected"

        lines = ["Plan Changes:"]

        if self.added:
            lines.append(f"  + Added: {len(self.added)} feature(s)")
            for p in self.added:
                lines.append(f"    - #{p.id}: {truncate(p.description, 60)}")

        if self.removed:
            lines.append(f"  - Removed: {len(self.removed)} feature(s)")
            for p in self.removed:
                lines.append(f"    - #{p.id}: {truncate(p.description, 60)}")

        if self.modified:
            lines.append(f"  ~ Modified: {len(self.modified)} change(s)")
            for c in self.modified:
                lines.append(f"    - #{c.id}.{c.field}: {c.old_value} -> {c.new_value}")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [p.to_dict() for p in self.added],
            "removed": [p.to_dict() for p in self.removed],
            "modified": [c.to_dict() for c in self.modified],
        }


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _bool(value: bool) -> str:
    return "true" if value else "false"


def compare_plans(old: Plan, new: Plan) -> list[PlanChange]:
    """Field-level changes between two versions of the same feature."""
    changes: list[PlanChange] = []

    def add(name: str, old_value: str, new_value: str) -> None:
        changes.append(PlanChange(id=old.id, field=name, old_value=old_value, new_value=new_value))

    if old.description != new.description:
        add("description", old.description, new.description)
    if old.category != new.category:
        add("category", old.category, new.category)
    if old.tested != new.tested:
        add("tested", _bool(old.tested), _bool(new.tested))
    if old.deferred != new.deferred:
        add("deferred", _bool(old.deferred), _bool(new.deferred))
    if old.steps != new.steps:
        add("steps", f"{len(old.steps)} steps", f"{len(new.steps)} steps")
    if old.expected_output != new.expected_output:
        add(
            "expected_output",
            truncate(old.expected_output, 50),
            truncate(new.expected_output, 50),
        )
    if old.milestone != new.milestone:
        add("milestone", old.milestone, new.milestone)

    return changes


def compute_diff(old_plans: list[Plan], new_plans: list[Plan]) -> PlanDiff:
    """Compute the changes from ``old_plans`` to ``new_plans``."""
    old_by_id = {p.id: p for p in old_plans}
    new_ids = {p.id for p in new_plans}

    diff = PlanDiff()
    for new in new_plans:
        old = old_by_id.get(new.id)
        if old is None:
            diff.added.append(new)
        else:
            diff.modified.extend(compare_plans(old, new))

    diff.removed = [p for p in old_plans if p.id not in new_ids]
    return diff
