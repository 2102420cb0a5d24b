"""Tier-1 recovery: classify, record, and remediate per-feature failures."""

from __future__ import annotations

import logging

from .classifier import Failure, FailureType, detect_failure
from .git import GitWorkspace
from .strategies import (
    RecoveryResult,
    RecoveryStrategy,
    RecoveryStrategyType,
    RetryRecoveryStrategy,
    RollbackRecoveryStrategy,
    SkipRecoveryStrategy,
)
from .tracker import FailureTracker

logger = logging.getLogger(__name__)

# Failure kinds where starting from a clean tree is likely to help
_ROLLBACK_KINDS = {FailureType.TEST, FailureType.TYPECHECK}


class RecoveryManager:
    """Composes classifier, tracker and the configured strategy.

    Example:
        manager = RecoveryManager(max_retries=3, strategy="retry")
        failure, result = manager.handle_failure(output, exit_code, feature_id, i)
        if result.should_retry:
            prompt = result.modified_prompt + prompt
    """

    def __init__(
        self,
        max_retries: int = 3,
        strategy: RecoveryStrategyType | str = RecoveryStrategyType.RETRY,
        workspace: GitWorkspace | None = None,
    ):
        self.max_retries = max_retries
        self.tracker = FailureTracker(max_retries)
        try:
            self.default_strategy = RecoveryStrategyType(strategy)
        except ValueError:
            logger.warning(f"Unknown recovery strategy '{strategy}', using retry")
            self.default_strategy = RecoveryStrategyType.RETRY

        self.strategies: dict[RecoveryStrategyType, RecoveryStrategy] = {
            RecoveryStrategyType.RETRY: RetryRecoveryStrategy(self.tracker, max_retries),
            RecoveryStrategyType.SKIP: SkipRecoveryStrategy(self.tracker),
            RecoveryStrategyType.ROLLBACK: RollbackRecoveryStrategy(self.tracker, workspace),
        }

    def handle_failure(
        self,
        output: str,
        exit_code: int,
        feature_id: int,
        iteration: int,
    ) -> tuple[Failure | None, RecoveryResult]:
        """Classify iteration output and apply recovery if it failed.

        Args:
            output: Raw output of the iteration.
            exit_code: Exit status of the iteration.
            feature_id: Feature being worked on.
            iteration: Iteration number.

        Returns:
            (failure, result). failure is None when nothing failed.
        """
        failure = detect_failure(output, exit_code, feature_id, iteration)
        if failure is None:
            return None, RecoveryResult(success=True, message="No failure detected")

        failure = self.tracker.record_failure(failure)
        strategy = self.select_strategy(failure)
        result = strategy.apply(failure)

        logger.info(f"Feature #{feature_id}: {failure.kind.value} -> {strategy.strategy_type.value}: {result.message}")

        if result.should_skip:
            self.tracker.reset_feature(feature_id)

        return failure, result

    def select_strategy(self, failure: Failure) -> RecoveryStrategy:
        """Choose the strategy for a recorded failure."""
        exhausted = not self.tracker.can_retry(failure.feature_id)

        if self.default_strategy == RecoveryStrategyType.ROLLBACK:
            if exhausted:
                return self.strategies[RecoveryStrategyType.SKIP]
            if failure.kind in _ROLLBACK_KINDS:
                return self.strategies[RecoveryStrategyType.ROLLBACK]
            return self.strategies[RecoveryStrategyType.RETRY]

        # Retry escalates to skip itself once the budget is spent
        return self.strategies[self.default_strategy]

    def record_success(self, feature_id: int) -> bool:
        """Reset a feature after a clean iteration. True if it had been failing."""
        return self.tracker.record_success(feature_id)

    def should_escalate(self, feature_id: int) -> bool:
        return not self.tracker.can_retry(feature_id)

    @property
    def recovered_count(self) -> int:
        return self.tracker.recovered_count

    def failure_summary(self) -> str:
        return self.tracker.summary()
