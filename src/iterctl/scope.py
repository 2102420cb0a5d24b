"""Scope control: iteration budgets, deadlines and feature deferral.

Keeps a run from over-building a single feature:
- Per-feature iteration budget (0 = unlimited)
- Wall-clock deadline for the whole run
- Complexity estimation and simplification hints

Complexity estimation and simplification hints are keyword heuristics,
not dependency analysis.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .errors import ConfigError

logger = logging.getLogger(__name__)


class Complexity(str, Enum):
    """Estimated complexity of a feature."""

    LOW = "low"  # 1-2 steps
    MEDIUM = "medium"  # 3-5 steps
    HIGH = "high"  # 6+ steps


class DeferReason(str, Enum):
    """Why a feature was deferred."""

    ITERATION_LIMIT = "iteration_limit"
    DEADLINE = "deadline"
    COMPLEXITY = "complexity"
    MANUAL = "manual"
    BLOCKED = "blocked_during_execution"


COMPLEXITY_KEYWORDS: list[str] = [
    "refactor",
    "migrate",
    "integration",
    "comprehensive",
    "multi",
    "parallel",
    "concurrent",
    "distributed",
    "security",
    "authentication",
    "authorization",
]

_DEFER_REASON_TEXT = {
    DeferReason.ITERATION_LIMIT: "exceeded iteration limit",
    DeferReason.DEADLINE: "deadline reached",
    DeferReason.COMPLEXITY: "too complex for current scope",
    DeferReason.MANUAL: "manually deferred",
    DeferReason.BLOCKED: "blocked during execution",
}


@dataclass(frozen=True)
class Constraints:
    """Scope limits for one run.

    Attributes:
        max_iterations_per_feature: Iteration budget per feature (0 = unlimited).
        deadline: Optional wall-clock deadline for the whole run.
        quality_threshold: Minimum test pass rate 0-100 (0 = none).
        auto_defer: Defer automatically when a limit is hit.
    """

    max_iterations_per_feature: int = 0
    deadline: datetime | None = None
    quality_threshold: int = 0
    auto_defer: bool = True


@dataclass
class FeatureScope:
    """Scope tracking for a single feature."""

    feature_id: int
    start_time: datetime
    estimated_complexity: Complexity
    iterations_used: int = 0
    end_time: datetime | None = None
    deferred: bool = False
    defer_reason: DeferReason | None = None
    simplification_suggested: bool = False


@dataclass
class DeferralInfo:
    """Details about one deferred feature."""

    feature_id: int
    reason: DeferReason | None
    iterations_used: int


@dataclass
class ScopeStatus:
    """Snapshot of scope state for display."""

    total_iterations: int
    elapsed: timedelta
    remaining_time: timedelta
    deadline_set: bool
    deadline_exceeded: bool
    deferred_feature_ids: list[int]
    max_iterations_per_feature: int
    iterations_per_feature: dict[int, int] = field(default_factory=dict)

    @property
    def deferred_count(self) -> int:
        return len(self.deferred_feature_ids)


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration like ``30m``, ``1h30m`` or ``90s``.

    Raises:
        ConfigError: If the string is not a valid duration.
    """
    text = value.strip()
    if text == "0":
        return timedelta(0)

    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration: {value!r} (examples: 30m, 1h30m, 90s)")
    return total


def parse_deadline(value: str, now: datetime | None = None) -> datetime | None:
    """Turn a duration string into an absolute deadline, or None if empty."""
    if not value.strip():
        return None
    return (now or datetime.now()) + parse_duration(value)


def estimate_complexity(step_count: int, description: str) -> Complexity:
    """Estimate complexity from step count, bumped one level by keywords."""
    if step_count <= 2:
        complexity = Complexity.LOW
    elif step_count <= 5:
        complexity = Complexity.MEDIUM
    else:
        complexity = Complexity.HIGH

    lowered = description.lower()
    if any(keyword in lowered for keyword in COMPLEXITY_KEYWORDS):
        if complexity == Complexity.LOW:
            complexity = Complexity.MEDIUM
        elif complexity == Complexity.MEDIUM:
            complexity = Complexity.HIGH

    return complexity


def complexity_to_iterations(complexity: Complexity) -> int:
    """Suggested iteration budget for a complexity level."""
    return {
        Complexity.LOW: 3,
        Complexity.MEDIUM: 5,
        Complexity.HIGH: 10,
    }.get(complexity, 5)


def suggest_simplification(step_count: int, description: str) -> list[str]:
    """Simplification hints for a feature that looks too big."""
    suggestions: list[str] = []

    if step_count > 5:
        suggestions.append(
            f"Feature has {step_count} steps - consider breaking into smaller features"
        )

    lowered = description.lower()
    if " and " in lowered:
        suggestions.append(
            "Description contains 'and' - may indicate multiple features that could be split"
        )
    if "comprehensive" in lowered or "complete" in lowered:
        suggestions.append("Consider implementing a minimal version first, then enhancing")
    if "all " in lowered:
        suggestions.append("'All' may be ambitious - consider implementing a subset first")

    if not suggestions:
        suggestions.append("Focus on core functionality, defer edge cases")

    return suggestions


def format_deferral_reason(reason: DeferReason | str | None) -> str:
    """Human-readable text for a deferral reason."""
    if reason is None:
        return ""
    try:
        return _DEFER_REASON_TEXT[DeferReason(reason)]
    except ValueError:
        return str(reason)


def _format_timedelta(delta: timedelta) -> str:
    seconds = int(round(delta.total_seconds()))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class ScopeManager:
    """Tracks iteration budgets and deadlines for a run."""

    def __init__(self, constraints: Constraints | None = None):
        self.constraints = constraints or Constraints()
        self.start_time = datetime.now()
        self._features: dict[int, FeatureScope] = {}
        self._total_iterations = 0
        self._deferred: list[int] = []

    def set_deadline(self, deadline: datetime | None) -> None:
        self.constraints = Constraints(
            max_iterations_per_feature=self.constraints.max_iterations_per_feature,
            deadline=deadline,
            quality_threshold=self.constraints.quality_threshold,
            auto_defer=self.constraints.auto_defer,
        )

    def set_deadline_duration(self, duration: timedelta) -> None:
        self.set_deadline(datetime.now() + duration)

    def start_feature(self, feature_id: int, step_count: int, description: str) -> FeatureScope:
        """Begin tracking a feature. An already tracked feature keeps its scope."""
        existing = self._features.get(feature_id)
        if existing is not None:
            return existing

        scope = FeatureScope(
            feature_id=feature_id,
            start_time=datetime.now(),
            estimated_complexity=estimate_complexity(step_count, description),
        )
        self._features[feature_id] = scope
        logger.debug(f"Tracking feature #{feature_id} ({scope.estimated_complexity.value} complexity)")
        return scope

    def record_iteration(self, feature_id: int) -> None:
        self._total_iterations += 1
        scope = self._features.get(feature_id)
        if scope is not None:
            scope.iterations_used += 1

    def get_feature_scope(self, feature_id: int) -> FeatureScope | None:
        return self._features.get(feature_id)

    def should_defer(self, feature_id: int) -> tuple[bool, DeferReason | None]:
        """Check whether a feature has exhausted its budget or the run its time."""
        scope = self._features.get(feature_id)
        if scope is None:
            return False, None

        limit = self.constraints.max_iterations_per_feature
        if limit > 0 and scope.iterations_used >= limit:
            return True, DeferReason.ITERATION_LIMIT

        if self.is_deadline_exceeded():
            return True, DeferReason.DEADLINE

        return False, None

    def defer_feature(self, feature_id: int, reason: DeferReason) -> None:
        scope = self._features.get(feature_id)
        if scope is not None:
            if scope.deferred:
                return
            scope.deferred = True
            scope.defer_reason = reason
            scope.end_time = datetime.now()
        if feature_id not in self._deferred:
            self._deferred.append(feature_id)
        logger.info(f"Deferred feature #{feature_id}: {format_deferral_reason(reason)}")

    def complete_feature(self, feature_id: int) -> None:
        scope = self._features.get(feature_id)
        if scope is not None:
            scope.end_time = datetime.now()

    @property
    def deferred_features(self) -> list[int]:
        return list(self._deferred)

    @property
    def total_iterations(self) -> int:
        return self._total_iterations

    @property
    def elapsed(self) -> timedelta:
        return datetime.now() - self.start_time

    def remaining_time(self) -> timedelta:
        """Time until the deadline; zero if there is none or it has passed."""
        if self.constraints.deadline is None:
            return timedelta(0)
        return max(self.constraints.deadline - datetime.now(), timedelta(0))

    def is_deadline_exceeded(self) -> bool:
        deadline = self.constraints.deadline
        return deadline is not None and datetime.now() > deadline

    def remaining_iterations(self, feature_id: int) -> int:
        """Iterations left for a feature, or -1 if unlimited."""
        limit = self.constraints.max_iterations_per_feature
        if limit <= 0:
            return -1
        scope = self._features.get(feature_id)
        if scope is None:
            return limit
        return max(limit - scope.iterations_used, 0)

    def should_suggest_simplification(self, feature_id: int) -> bool:
        """High complexity, or half the iteration budget used (minimum 1)."""
        scope = self._features.get(feature_id)
        if scope is None:
            return False

        if scope.estimated_complexity == Complexity.HIGH:
            return True

        limit = self.constraints.max_iterations_per_feature
        if limit > 0:
            half = max(limit // 2, 1)
            if scope.iterations_used >= half:
                return True

        return False

    def mark_simplification_suggested(self, feature_id: int) -> None:
        scope = self._features.get(feature_id)
        if scope is not None:
            scope.simplification_suggested = True

    def was_simplification_suggested(self, feature_id: int) -> bool:
        scope = self._features.get(feature_id)
        return scope.simplification_suggested if scope else False

    def get_status(self) -> ScopeStatus:
        return ScopeStatus(
            total_iterations=self._total_iterations,
            elapsed=self.elapsed,
            remaining_time=self.remaining_time(),
            deadline_set=self.constraints.deadline is not None,
            deadline_exceeded=self.is_deadline_exceeded(),
            deferred_feature_ids=list(self._deferred),
            max_iterations_per_feature=self.constraints.max_iterations_per_feature,
            iterations_per_feature={fid: s.iterations_used for fid, s in self._features.items()},
        )

    def format_status(self) -> str:
        status = self.get_status()
        lines = [f"Elapsed time: {_format_timedelta(status.elapsed)}"]

        if status.deadline_set:
            if status.deadline_exceeded:
                lines.append("Deadline: EXCEEDED")
            else:
                lines.append(f"Time remaining: {_format_timedelta(status.remaining_time)}")

        if status.max_iterations_per_feature > 0:
            lines.append(f"Max iterations per feature: {status.max_iterations_per_feature}")

        if status.deferred_count:
            ids = ", ".join(str(i) for i in status.deferred_feature_ids)
            lines.append(f"Deferred features: {status.deferred_count} (IDs: {ids})")

        return "\n".join(lines)

    def get_deferral_info(self) -> list[DeferralInfo]:
        info = []
        for feature_id in self._deferred:
            scope = self._features.get(feature_id)
            if scope is not None:
                info.append(
                    DeferralInfo(
                        feature_id=feature_id,
                        reason=scope.defer_reason,
                        iterations_used=scope.iterations_used,
                    )
                )
        return info
