"""Recovery strategies for failed features.

Provides the per-feature remediation applied after a classified failure:
- RetryRecoveryStrategy: Retry with guidance tailored to the failure kind
- SkipRecoveryStrategy: Give up on the feature and move on
- RollbackRecoveryStrategy: Discard uncommitted changes, then retry
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from ..errors import ConfigError, RollbackError
from .classifier import Failure, FailureType
from .git import GitWorkspace
from .tracker import FailureTracker

logger = logging.getLogger(__name__)


class RecoveryStrategyType(str, Enum):
    """Types of recovery strategies."""

    RETRY = "retry"  # Retry with modified prompt
    SKIP = "skip"  # Mark blocked, move to next feature
    ROLLBACK = "rollback"  # Revert working tree, then retry


def parse_recovery_strategy(value: str) -> RecoveryStrategyType:
    """Parse a configured strategy name.

    Raises:
        ConfigError: If the name is not retry, skip or rollback.
    """
    try:
        return RecoveryStrategyType(value.strip().lower())
    except ValueError:
        raise ConfigError(
            f"unknown recovery strategy: {value} (valid: retry, skip, rollback)"
        ) from None


@dataclass
class RecoveryResult:
    """Directive for the driver after a failure. Consumed immediately."""

    success: bool
    message: str
    should_retry: bool = False
    should_skip: bool = False
    modified_prompt: str = ""
    strategy: RecoveryStrategyType | None = None
    error: str | None = None  # Infrastructure error, not a feature failure


# Per-kind focus points injected into the retry prompt
_RETRY_GUIDANCE: dict[FailureType, tuple[str, list[str]]] = {
    FailureType.TEST: (
        "The previous attempt failed due to test failures.",
        [
            "Fix the failing tests before making other changes",
            "Ensure all test assertions pass",
            "Run tests locally before completing",
        ],
    ),
    FailureType.TYPECHECK: (
        "The previous attempt failed due to type/compilation errors.",
        [
            "Fix all type errors and compilation issues first",
            "Ensure the code compiles cleanly",
            "Check imports and dependencies",
        ],
    ),
    FailureType.TIMEOUT: (
        "The previous attempt timed out.",
        [
            "Reduce the scope of the change",
            "Break the work down into smaller steps",
            "Avoid long-running operations",
        ],
    ),
    FailureType.AGENT_ERROR: (
        "The previous attempt encountered an error.",
        [
            "Review the error message carefully",
            "Address the root cause",
            "Verify the approach is correct",
        ],
    ),
}


def build_retry_prompt(failure: Failure, attempt_number: int, max_attempts: int) -> str:
    """Build retry guidance for the next prompt.

    Args:
        failure: The failure that triggered the retry.
        attempt_number: The attempt about to be made (1-indexed).
        max_attempts: Retry budget for the feature.

    Returns:
        Text to prepend to the next iteration prompt.
    """
    headline, focus = _RETRY_GUIDANCE[failure.kind]
    lines = [
        f"IMPORTANT: {headline}",
        f"Error: {failure.message}",
        f"Retry attempt {attempt_number} of {max_attempts} for feature #{failure.feature_id}.",
        "",
        "Please focus on:",
    ]
    lines.extend(f"{i}. {point}" for i, point in enumerate(focus, 1))
    return "\n".join(lines)


class RecoveryStrategy(ABC):
    """Base class for recovery strategies."""

    def __init__(self, tracker: FailureTracker):
        self.tracker = tracker

    @property
    @abstractmethod
    def strategy_type(self) -> RecoveryStrategyType:
        """Return the strategy type."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of the strategy."""
        ...

    @abstractmethod
    def apply(self, failure: Failure) -> RecoveryResult:
        """Apply the strategy to a recorded failure.

        Args:
            failure: The failure, already recorded in the tracker.

        Returns:
            RecoveryResult telling the driver what to do next.
        """
        ...


class RetryRecoveryStrategy(RecoveryStrategy):
    """Retry with guidance based on the failure kind.

    Escalates to skip on its own once the retry budget is spent.
    """

    def __init__(self, tracker: FailureTracker, max_retries: int):
        super().__init__(tracker)
        self.max_retries = max_retries

    @property
    def strategy_type(self) -> RecoveryStrategyType:
        return RecoveryStrategyType.RETRY

    @property
    def description(self) -> str:
        return "Retry the feature with enhanced prompt guidance based on the failure type"

    def apply(self, failure: Failure) -> RecoveryResult:
        if not self.tracker.can_retry(failure.feature_id):
            return RecoveryResult(
                success=False,
                message=f"Max retries ({self.max_retries}) exceeded for feature #{failure.feature_id}",
                should_retry=False,
                should_skip=True,
                strategy=self.strategy_type,
            )

        attempt = self.tracker.get_retry_count(failure.feature_id) + 1
        return RecoveryResult(
            success=True,
            message=f"Retrying feature #{failure.feature_id} (attempt {attempt}/{self.max_retries})",
            should_retry=True,
            should_skip=False,
            modified_prompt=build_retry_prompt(failure, attempt, self.max_retries),
            strategy=self.strategy_type,
        )


class SkipRecoveryStrategy(RecoveryStrategy):
    """Mark the feature as blocked and move to the next one."""

    @property
    def strategy_type(self) -> RecoveryStrategyType:
        return RecoveryStrategyType.SKIP

    @property
    def description(self) -> str:
        return "Mark the feature as blocked and proceed to the next feature"

    def apply(self, failure: Failure) -> RecoveryResult:
        count = len(self.tracker.get_failures(failure.feature_id))
        return RecoveryResult(
            success=True,
            message=(
                f"Skipping feature #{failure.feature_id} after {count} failure(s). "
                "Moving to next feature."
            ),
            should_retry=False,
            should_skip=True,
            strategy=self.strategy_type,
        )


class RollbackRecoveryStrategy(RecoveryStrategy):
    """Revert to the last commit, then retry from a clean tree."""

    def __init__(self, tracker: FailureTracker, workspace: GitWorkspace | None = None):
        super().__init__(tracker)
        self.workspace = workspace or GitWorkspace()

    @property
    def strategy_type(self) -> RecoveryStrategyType:
        return RecoveryStrategyType.ROLLBACK

    @property
    def description(self) -> str:
        return "Revert to the last known good state using git, then retry"

    def apply(self, failure: Failure) -> RecoveryResult:
        if not self.workspace.is_repo():
            return RecoveryResult(
                success=False,
                message="Cannot rollback: not in a git repository",
                should_retry=False,
                should_skip=True,
                strategy=self.strategy_type,
            )

        if not self.workspace.has_uncommitted_changes():
            return RecoveryResult(
                success=False,
                message="Cannot rollback: no uncommitted changes to revert",
                should_retry=True,
                should_skip=False,
                strategy=self.strategy_type,
            )

        try:
            self.workspace.discard_changes()
        except RollbackError as e:
            logger.error(f"Rollback failed for feature #{failure.feature_id}: {e}")
            return RecoveryResult(
                success=False,
                message=f"Rollback failed: {e}",
                should_retry=False,
                should_skip=True,
                strategy=self.strategy_type,
                error=str(e),
            )

        return RecoveryResult(
            success=True,
            message=f"Rolled back changes for feature #{failure.feature_id}. Clean state restored.",
            should_retry=True,
            should_skip=False,
            strategy=self.strategy_type,
        )
