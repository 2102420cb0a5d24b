"""Per-iteration control flow tying recovery, scope control and replanning.

The driver runs the agent itself. Around each agent call it asks the
engine what to work on and then hands back the agent's output:

    engine = IterationEngine(config, "plan.json")
    for i in range(1, max_iterations + 1):
        start = engine.begin_iteration(i)
        if start.deadline_exceeded or start.feature_id == 0:
            break
        output, exit_code = run_agent(start.guidance + prompt)
        outcome = engine.complete_iteration(output, exit_code)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .config import LoopConfig
from .errors import ConfigError, IterctlError, PlanFileError
from .plan import Plan, get_by_id, mark_deferred, read_plans, write_plans
from .recovery import Failure, GitWorkspace, RecoveryManager, RecoveryResult
from .replan import ReplanManager, ReplanResult, ReplanStrategyType, TriggerType
from .replan.strategies import AgentRunner, parse_replan_strategy
from .scope import DeferReason, ScopeManager, format_deferral_reason, suggest_simplification

logger = logging.getLogger(__name__)


def append_progress(path: str | Path, message: str) -> bool:
    """Append a timestamped entry to the progress log.

    Returns:
        False if the log could not be written.
    """
    entry = f"\n[{datetime.now().astimezone().isoformat(timespec='seconds')}] {message}\n"
    try:
        with open(path, "a") as f:
            f.write(entry)
    except OSError as e:
        logger.warning(f"Failed to write progress file {path}: {e}")
        return False
    return True


@dataclass
class IterationOutcome:
    """What happened in one iteration.

    ``feature_id`` is 0 when no pending feature is left.
    """

    iteration: int
    feature_id: int = 0
    deadline_exceeded: bool = False
    guidance: str = ""
    deferred: list[tuple[int, DeferReason]] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    failure: Failure | None = None
    recovery: RecoveryResult | None = None
    recommended_trigger: TriggerType = TriggerType.NONE
    replan: ReplanResult | None = None
    replan_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.recovery is not None and self.failure is None


class IterationEngine:
    """Runs Tier-1 recovery, scope control and Tier-2 replanning per iteration."""

    def __init__(
        self,
        config: LoopConfig,
        plan_path: str | Path | None = None,
        agent_runner: AgentRunner | None = None,
        workspace: GitWorkspace | None = None,
    ):
        self.config = config
        self.plan_path = Path(plan_path or config.core.plan_file)

        progress = Path(config.core.progress_file)
        self.progress_path = progress if progress.is_absolute() else self.plan_path.parent / progress

        self.recovery = RecoveryManager(
            max_retries=config.recovery.max_retries,
            strategy=config.recovery.strategy,
            workspace=workspace,
        )
        self.scope = ScopeManager(config.scope.to_constraints())
        try:
            self.replan_strategy = parse_replan_strategy(config.replan.strategy)
        except ConfigError as e:
            logger.warning(f"{e}, using incremental")
            self.replan_strategy = ReplanStrategyType.INCREMENTAL
        self.replan = ReplanManager(
            self.plan_path,
            agent_cmd=config.core.agent_cmd,
            auto_replan=config.replan.auto_replan,
            threshold=config.replan.threshold,
            min_blocked=config.replan.min_blocked,
            strategy=self.replan_strategy,
            agent_runner=agent_runner,
            agent_timeout=config.core.agent_timeout,
            on_reset=self.recovery.tracker.reset_feature,
        )

        self.consecutive_failures = 0
        self._pending_guidance = ""
        self._current: IterationOutcome | None = None
        self._plans: list[Plan] = []

    def _select_feature(self, plans: list[Plan]) -> Plan | None:
        blocked = set(self.replan.state.blocked_features)
        for p in plans:
            if p.is_pending and p.id not in blocked:
                return p
        return None

    def _defer(self, plans: list[Plan], feature: Plan, reason: DeferReason) -> None:
        self.scope.defer_feature(feature.id, reason)
        mark_deferred(plans, feature.id, reason.value)
        try:
            write_plans(self.plan_path, plans)
        except PlanFileError as e:
            logger.warning(f"Could not record deferral of feature #{feature.id}: {e}")
        else:
            self.replan.sync_plans(plans)

        scope = self.scope.get_feature_scope(feature.id)
        used = scope.iterations_used if scope else 0
        append_progress(
            self.progress_path,
            f"DEFERRED: Feature #{feature.id} - {format_deferral_reason(reason)} (iterations used: {used})",
        )

    def begin_iteration(self, iteration: int) -> IterationOutcome:
        """Pick the feature for this iteration and apply scope limits.

        Raises:
            PlanFileError: If the plan file cannot be read.
        """
        outcome = IterationOutcome(iteration=iteration)
        self._current = outcome

        if self.scope.is_deadline_exceeded():
            logger.warning("Deadline exceeded - stopping execution")
            outcome.deadline_exceeded = True
            return outcome

        plans = read_plans(self.plan_path)
        self._plans = plans

        feature = self._select_feature(plans)
        while feature is not None:
            self.scope.start_feature(feature.id, len(feature.steps), feature.description)
            should_defer, reason = self.scope.should_defer(feature.id)
            if not should_defer or reason is None:
                break
            if not self.scope.constraints.auto_defer:
                logger.warning(f"Feature #{feature.id} is over scope ({format_deferral_reason(reason)})")
                break
            self._defer(plans, feature, reason)
            outcome.deferred.append((feature.id, reason))
            feature = self._select_feature(plans)

        if feature is None:
            logger.info("No pending features left")
            return outcome

        outcome.feature_id = feature.id
        self.scope.record_iteration(feature.id)

        if self.scope.should_suggest_simplification(feature.id) and not self.scope.was_simplification_suggested(
            feature.id
        ):
            outcome.suggestions = suggest_simplification(len(feature.steps), feature.description)
            self.scope.mark_simplification_suggested(feature.id)
            logger.info(f"Feature #{feature.id} may be complex: {'; '.join(outcome.suggestions)}")

        outcome.guidance = self._pending_guidance
        self._pending_guidance = ""
        return outcome

    def _reload_plans(self) -> list[Plan]:
        try:
            self._plans = read_plans(self.plan_path)
        except PlanFileError as e:
            logger.warning(f"Using last known plan: {e}")
        return self._plans

    def complete_iteration(self, output: str, exit_code: int) -> IterationOutcome:
        """Classify the iteration's result and run recovery and replanning.

        Infrastructure errors during a replan are logged and reported in
        ``replan_error``; they never end the run.
        """
        if self._current is None:
            raise IterctlError("complete_iteration called before begin_iteration")

        outcome = self._current
        self._current = None
        feature_id = outcome.feature_id

        failure, result = self.recovery.handle_failure(output, exit_code, feature_id, outcome.iteration)
        outcome.failure = failure
        outcome.recovery = result

        if failure is None:
            self.consecutive_failures = 0
            if self.recovery.record_success(feature_id):
                logger.info(f"Feature #{feature_id} recovered")
            self.scope.complete_feature(feature_id)
            failure_types: list[str] = []
        else:
            self.consecutive_failures += 1
            append_progress(
                self.progress_path,
                f"FAILURE [{failure.kind.value}]: {failure.message} "
                f"(feature #{failure.feature_id}, retry {failure.retry_count})",
            )
            if result.should_skip:
                self.replan.add_blocked_feature(feature_id)
            elif result.should_retry and result.modified_prompt:
                self._pending_guidance = result.modified_prompt
            if result.error:
                logger.error(f"Recovery action failed: {result.error}")
            failure_types = [failure.kind.value]

        plans = self._reload_plans()
        self.replan.update_state(feature_id, self.consecutive_failures, failure_types, plans)
        self.replan.increment_iterations()

        should_replan, trigger = self.replan.should_replan()
        outcome.recommended_trigger = trigger
        if trigger != TriggerType.NONE and not should_replan:
            logger.info(f"Replan recommended (trigger: {trigger.value})")

        # An automatic replan in the same iteration also satisfies a manual request
        requested = self.replan.manual_trigger.consume()
        if should_replan and self.replan_strategy != ReplanStrategyType.NONE:
            self._run_replan(outcome, trigger)
        elif requested:
            if self.replan_strategy == ReplanStrategyType.NONE:
                logger.info("Manual replan requested but replanning is disabled")
            else:
                self._run_replan(outcome, TriggerType.MANUAL)

        return outcome

    def request_replan(self) -> None:
        """Ask for a replan at the end of the next completed iteration."""
        self.replan.manual_trigger.activate()
        logger.info("Manual replan requested")

    def _run_replan(self, outcome: IterationOutcome, trigger: TriggerType) -> None:
        logger.info(f"Replanning triggered ({trigger.value})")
        try:
            result = self.replan.execute_replan(self.replan_strategy, trigger)
        except IterctlError as e:
            logger.error(f"Replanning failed: {e}")
            outcome.replan_error = str(e)
            return

        outcome.replan = result
        if result.success:
            self._plans = result.new_plans
            self.consecutive_failures = 0
            append_progress(
                self.progress_path,
                f"REPLAN: {trigger.value} triggered, strategy: {self.replan_strategy.value}",
            )

    @property
    def current_plan(self) -> Plan | None:
        if self._current is None:
            return None
        return get_by_id(self._plans, self._current.feature_id)
