"""ReplanManager: the Tier-2 coordinator.

Owns the run-level ReplanState, evaluates triggers in priority order and
is the only component that rewrites the plan file during a replan.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from ..plan import Plan, copy_plans, write_plans
from .strategies import (
    AgentBasedStrategy,
    AgentRunner,
    IncrementalStrategy,
    ReplanResult,
    ReplanStrategy,
    ReplanStrategyType,
)
from .triggers import (
    BlockedFeatureTrigger,
    ManualTrigger,
    ReplanState,
    ReplanTrigger,
    RequirementChangeTrigger,
    TestFailureTrigger,
    TriggerType,
)
from .versioning import PlanVersion, PlanVersioner, calculate_plans_hash

logger = logging.getLogger(__name__)


class ReplanManager:
    """Coordinates triggers, strategies and plan versioning.

    Example:
        manager = ReplanManager("plan.json", auto_replan=True, threshold=3)
        manager.update_state(feature_id, failures, ["test_failure"], plans)
        should, trigger = manager.should_replan()
        if should:
            result = manager.execute_replan(ReplanStrategyType.INCREMENTAL, trigger)
    """

    def __init__(
        self,
        plan_path: str | Path,
        agent_cmd: str = "cursor-agent",
        auto_replan: bool = False,
        threshold: int = 3,
        min_blocked: int = 1,
        strategy: ReplanStrategyType | str = ReplanStrategyType.INCREMENTAL,
        agent_runner: AgentRunner | None = None,
        agent_timeout: int | None = 600,
        on_reset: Callable[[int], None] | None = None,
    ):
        self.plan_path = Path(plan_path)
        self.auto_replan = auto_replan
        self.default_strategy = self._resolve_strategy(strategy)
        self.on_reset = on_reset
        self.state = ReplanState()

        self.manual_trigger = ManualTrigger()
        # Evaluated in order; the first one that fires wins
        self.triggers: tuple[ReplanTrigger, ...] = (
            TestFailureTrigger(threshold),
            RequirementChangeTrigger(),
            BlockedFeatureTrigger(min_blocked),
        )

        if agent_runner is not None:
            agent_strategy = AgentBasedStrategy(agent_runner)
        else:
            agent_strategy = AgentBasedStrategy.from_command(agent_cmd, agent_timeout)
        self.strategies: dict[ReplanStrategyType, ReplanStrategy] = {
            ReplanStrategyType.INCREMENTAL: IncrementalStrategy(),
            ReplanStrategyType.AGENT: agent_strategy,
        }

        self.versioner = PlanVersioner(self.plan_path)
        found = self.versioner.discover_backups()
        if found:
            logger.debug(f"Discovered {found} existing plan backup(s)")

    @staticmethod
    def _resolve_strategy(strategy: ReplanStrategyType | str) -> ReplanStrategyType:
        try:
            return ReplanStrategyType(strategy)
        except ValueError:
            logger.warning(f"Unknown replan strategy '{strategy}', using incremental")
            return ReplanStrategyType.INCREMENTAL

    def update_state(
        self,
        feature_id: int,
        consecutive_failures: int,
        failure_types: list[str] | None,
        plans: list[Plan],
    ) -> None:
        """Record the latest run state. Called once per iteration."""
        self.state.last_plan_hash = self.state.plan_hash

        self.state.feature_id = feature_id
        self.state.consecutive_failures = consecutive_failures
        self.state.failure_types = list(failure_types or [])
        self.state.plans = copy_plans(plans)
        self.state.plan_hash = calculate_plans_hash(plans)

    def sync_plans(self, plans: list[Plan]) -> None:
        """Adopt plans written by the caller itself without signalling a change."""
        self.state.plans = copy_plans(plans)
        self.state.plan_hash = calculate_plans_hash(plans)
        self.state.last_plan_hash = self.state.plan_hash

    def add_blocked_feature(self, feature_id: int) -> None:
        if feature_id not in self.state.blocked_features:
            self.state.blocked_features.append(feature_id)

    def clear_blocked_features(self) -> None:
        self.state.blocked_features = []

    def increment_iterations(self) -> None:
        self.state.total_iterations += 1

    def check_triggers(self) -> TriggerType:
        """Return the first trigger that fires, or TriggerType.NONE."""
        for trigger in self.triggers:
            if trigger.check(self.state):
                return trigger.trigger_type
        return TriggerType.NONE

    def should_replan(self) -> tuple[bool, TriggerType]:
        """Whether to replan now, and the trigger that fired.

        The trigger is reported even when auto-replan is disabled so the
        caller can recommend a replan without applying it.
        """
        trigger = self.check_triggers()
        if trigger == TriggerType.NONE:
            return False, TriggerType.NONE
        return self.auto_replan, trigger

    def execute_replan(
        self,
        strategy: ReplanStrategyType | str | None,
        trigger: TriggerType,
    ) -> ReplanResult:
        """Back up the plan, run a strategy and persist its result.

        The plan file is only rewritten when the strategy succeeded and
        produced a non-empty plan list.

        Raises:
            BackupError: If the pre-replan backup fails.
            PlanFileError: If the new plan cannot be written.
            AgentExecutionError: If the agent strategy cannot run the agent.
            PlanParseError: If the agent output holds no plan.
        """
        backup_path = self.versioner.create_backup(trigger.value)

        strategy_type = self.default_strategy if strategy is None else self._resolve_strategy(strategy)
        if strategy_type == ReplanStrategyType.NONE:
            logger.info("Replanning disabled, plan left unchanged")
            return ReplanResult(
                success=False,
                message="Replanning disabled",
                trigger=trigger,
                strategy=strategy_type,
                old_plan_path=str(backup_path),
            )

        result = self.strategies[strategy_type].execute(self.state, trigger)
        result.old_plan_path = str(backup_path)

        if result.success and result.new_plans:
            write_plans(self.plan_path, result.new_plans)
            self.sync_plans(result.new_plans)
            self._after_replan(result.new_plans)
            logger.info(f"Replanned ({strategy_type.value}, trigger: {trigger.value}): {result.message}")
        else:
            logger.info(f"Replan made no changes: {result.message}")

        return result

    def _after_replan(self, plans: list[Plan]) -> None:
        feature_id = self.state.feature_id
        if self.on_reset is not None and feature_id:
            self.on_reset(feature_id)

        deferred = {p.id for p in plans if p.deferred}
        self.state.blocked_features = [i for i in self.state.blocked_features if i not in deferred]
        self.reset_state()

    def manual_replan(self, strategy: ReplanStrategyType | str | None = None) -> ReplanResult:
        """Replan right away on explicit user request.

        A pending manual request is satisfied by this replan and cleared.
        """
        self.manual_trigger.reset()
        return self.execute_replan(strategy, TriggerType.MANUAL)

    def get_versions(self) -> list[PlanVersion]:
        return self.versioner.versions

    def restore_version(self, version: int) -> None:
        """Restore a backup onto the live plan file.

        Raises:
            InvalidVersionError: If the version does not exist.
            BackupError: If the copy fails.
        """
        self.versioner.restore_version(version)

    def trigger_descriptions(self) -> list[str]:
        triggers = [*self.triggers, self.manual_trigger]
        return [f"{t.trigger_type.value}: {t.description}" for t in triggers]

    def reset_state(self) -> None:
        """Clear Tier-1 counters. Blocked features and iteration totals are kept."""
        self.state.consecutive_failures = 0
        self.state.failure_types = []
