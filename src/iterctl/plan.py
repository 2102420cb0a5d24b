"""Plan file model and operations.

The plan file is a JSON array of work items ("features"). Only the fields
below are interpreted; anything else in the file is ignored.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import PlanFileError, PlanParseError

logger = logging.getLogger(__name__)

# Fields always written, even when empty
_REQUIRED_FIELDS = ("id", "description")

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


class Plan(BaseModel):
    """One work item in the plan file."""

    model_config = ConfigDict(extra="ignore")

    id: int
    category: str = ""
    command: str = ""
    description: str = ""
    steps: list[str] = Field(default_factory=list)
    expected_output: str = ""
    tested: bool = False
    milestone: str = ""
    milestone_order: int = 0
    deferred: bool = False
    defer_reason: str = ""

    @property
    def is_pending(self) -> bool:
        """Not yet tested and not deferred."""
        return not self.tested and not self.deferred

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting empty optional fields."""
        data = self.model_dump(exclude_defaults=True)
        for key in _REQUIRED_FIELDS:
            data.setdefault(key, getattr(self, key))
        return {k: data[k] for k in type(self).model_fields if k in data}


_PLAN_LIST = TypeAdapter(list[Plan])


def plans_to_json(plans: list[Plan]) -> str:
    """Render plans the way they are stored on disk."""
    return json.dumps([p.to_dict() for p in plans], indent=4)


def parse_plans(text: str) -> list[Plan]:
    """Parse a JSON array of plans.

    Raises:
        PlanParseError: If the text is not a valid plan array.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PlanParseError(f"invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise PlanParseError(f"expected a JSON array, got {type(data).__name__}")

    try:
        return _PLAN_LIST.validate_python(data)
    except ValidationError as e:
        raise PlanParseError(f"invalid plan entries: {e.error_count()} error(s)") from e


def read_plans(path: str | Path) -> list[Plan]:
    """Read and parse a plan file.

    Raises:
        PlanFileError: If the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise PlanFileError(f"failed to read plan file {path}: {e}") from e

    try:
        return parse_plans(text)
    except PlanParseError as e:
        raise PlanFileError(f"failed to parse plan file {path}: {e}") from e


def write_plans(path: str | Path, plans: list[Plan]) -> None:
    """Write plans to disk.

    The content is fully serialized first, written to a temporary file in
    the same directory, then renamed over the target, so a failed write
    leaves the previous file intact.

    Raises:
        PlanFileError: If the file cannot be written.
    """
    path = Path(path)
    content = plans_to_json(plans)

    tmp_name: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise PlanFileError(f"failed to write plan file {path}: {e}") from e

    logger.debug(f"Wrote {len(plans)} plan(s) to {path}")


def get_by_id(plans: list[Plan], feature_id: int) -> Plan | None:
    """Return the plan with the given ID, or None."""
    for p in plans:
        if p.id == feature_id:
            return p
    return None


def mark_deferred(plans: list[Plan], feature_id: int, reason: str) -> bool:
    """Mark a plan as deferred in place. Returns False if the ID is unknown."""
    p = get_by_id(plans, feature_id)
    if p is None:
        return False
    p.deferred = True
    p.defer_reason = reason
    return True


def filter_tested(plans: list[Plan], tested: bool) -> list[Plan]:
    return [p for p in plans if p.tested == tested]


def filter_deferred(plans: list[Plan], deferred: bool) -> list[Plan]:
    return [p for p in plans if p.deferred == deferred]


def next_pending(plans: list[Plan]) -> Plan | None:
    """First plan that is neither tested nor deferred."""
    for p in plans:
        if p.is_pending:
            return p
    return None


def copy_plans(plans: list[Plan]) -> list[Plan]:
    return [p.model_copy(deep=True) for p in plans]


def extract_plans_from_output(output: str) -> list[Plan]:
    """Extract a plan array from free-form agent output.

    Looks for the outermost ``[`` ... ``]`` span first. If that is missing
    or does not parse, falls back to the contents of a fenced code block.

    Raises:
        PlanParseError: If no parseable plan array is found.
    """
    errors: list[str] = []

    start = output.find("[")
    end = output.rfind("]")
    if start != -1 and end > start:
        try:
            return parse_plans(output[start : end + 1])
        except PlanParseError as e:
            errors.append(str(e))
    else:
        errors.append("no JSON array found in output")

    for block in _FENCED_BLOCK.findall(output):
        block = block.strip()
        if not block.startswith("["):
            continue
        try:
            return parse_plans(block)
        except PlanParseError as e:
            errors.append(f"code block: {e}")

    raise PlanParseError("; ".join(errors))
