"""Replanning triggers and the shared run state they read.

Triggers are predicates over ReplanState. They hold only their own
threshold configuration; all run state lives in ReplanState, which is
owned and updated by ReplanManager.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from ..plan import Plan


class TriggerType(str, Enum):
    """Conditions that can cause a replan."""

    NONE = "none"
    TEST_FAILURE = "test_failure"
    REQUIREMENT_CHANGE = "requirement_change"
    BLOCKED_FEATURE = "blocked_feature"
    MANUAL = "manual"


@dataclass
class ReplanState:
    """Run state evaluated by triggers and strategies.

    Attributes:
        feature_id: Feature currently being worked on.
        consecutive_failures: Failures since the last success or replan.
        failure_types: Failure kinds seen in the latest update.
        plan_hash: Hash of the plans at the latest update.
        last_plan_hash: Hash observed at the update before that.
        blocked_features: Features given up on during this run.
        total_iterations: Iterations counted so far.
        plans: Current plan list.
    """

    feature_id: int = 0
    consecutive_failures: int = 0
    failure_types: list[str] = field(default_factory=list)
    plan_hash: str = ""
    last_plan_hash: str = ""
    blocked_features: list[int] = field(default_factory=list)
    total_iterations: int = 0
    plans: list[Plan] = field(default_factory=list)


class ReplanTrigger(ABC):
    """Base class for replanning triggers."""

    @property
    @abstractmethod
    def trigger_type(self) -> TriggerType:
        """Return the trigger type."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description."""
        ...

    @abstractmethod
    def check(self, state: ReplanState) -> bool:
        """Return True if the trigger condition holds."""
        ...


class TestFailureTrigger(ReplanTrigger):
    """Fires after repeated consecutive failures."""

    __test__ = False  # not a pytest test class

    def __init__(self, threshold: int = 3):
        self.threshold = threshold if threshold > 0 else 3

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.TEST_FAILURE

    @property
    def description(self) -> str:
        return f"Trigger replanning after {self.threshold} consecutive test failures"

    def check(self, state: ReplanState) -> bool:
        return state.consecutive_failures >= self.threshold


class RequirementChangeTrigger(ReplanTrigger):
    """Fires when the plan changed between two consecutive state updates."""

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.REQUIREMENT_CHANGE

    @property
    def description(self) -> str:
        return "Trigger replanning when the plan file is externally modified"

    def check(self, state: ReplanState) -> bool:
        return bool(state.plan_hash) and bool(state.last_plan_hash) and state.plan_hash != state.last_plan_hash


class BlockedFeatureTrigger(ReplanTrigger):
    """Fires when enough features have been blocked."""

    def __init__(self, min_blocked: int = 1):
        self.min_blocked = min_blocked if min_blocked > 0 else 1

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.BLOCKED_FEATURE

    @property
    def description(self) -> str:
        return f"Trigger replanning when {self.min_blocked} or more features are blocked"

    def check(self, state: ReplanState) -> bool:
        return len(state.blocked_features) >= self.min_blocked


class ManualTrigger(ReplanTrigger):
    """Latch set by an explicit user request, cleared once consumed."""

    def __init__(self) -> None:
        self._activated = False

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.MANUAL

    @property
    def description(self) -> str:
        return "Manually triggered replanning"

    def check(self, state: ReplanState) -> bool:
        return self._activated

    def activate(self) -> None:
        self._activated = True

    def reset(self) -> None:
        self._activated = False

    def consume(self) -> bool:
        """Return whether the latch was set, clearing it."""
        activated = self._activated
        self._activated = False
        return activated
