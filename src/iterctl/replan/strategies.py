"""Replanning strategies.

Given the run state and the trigger that fired, a strategy produces a new
plan list plus a diff against the current one:
- IncrementalStrategy: deterministic rule-based adjustments
- AgentBasedStrategy: asks the external agent for an updated plan
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import AgentExecutionError, ConfigError
from ..plan import Plan, copy_plans, extract_plans_from_output, get_by_id, next_pending
from ..scope import DeferReason
from .diff import PlanDiff, compute_diff
from .triggers import ReplanState, TriggerType

logger = logging.getLogger(__name__)

REVIEW_MARKER = "[REQUIRES REVIEW"
REVIEW_NOTE = "[REQUIRES REVIEW: Multiple test failures]"

# Features with more steps than this are flagged as candidates for splitting
SPLIT_STEP_THRESHOLD = 5

# Words shorter than this are ignored by the prerequisite heuristic
_MIN_KEYWORD_LEN = 5

AgentRunner = Callable[[str], str]


class ReplanStrategyType(str, Enum):
    """Types of replanning strategies."""

    INCREMENTAL = "incremental"
    AGENT = "agent"
    NONE = "none"


_STRATEGY_ALIASES = {
    "incremental": ReplanStrategyType.INCREMENTAL,
    "inc": ReplanStrategyType.INCREMENTAL,
    "agent": ReplanStrategyType.AGENT,
    "ai": ReplanStrategyType.AGENT,
    "none": ReplanStrategyType.NONE,
    "off": ReplanStrategyType.NONE,
    "": ReplanStrategyType.NONE,
}


def parse_replan_strategy(value: str) -> ReplanStrategyType:
    """Parse a configured replan strategy name.

    Raises:
        ConfigError: If the name is unknown.
    """
    try:
        return _STRATEGY_ALIASES[value.strip().lower()]
    except KeyError:
        raise ConfigError(
            f"unknown replan strategy: {value} (valid: incremental, agent, none)"
        ) from None


@dataclass
class ReplanResult:
    """Outcome of one replanning attempt."""

    success: bool
    message: str
    trigger: TriggerType
    strategy: ReplanStrategyType
    old_plan_path: str = ""
    new_plans: list[Plan] = field(default_factory=list)
    diff: PlanDiff | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def summary(self) -> str:
        status = "succeeded" if self.success else "failed"
        lines = [f"Replan ({self.strategy.value}, trigger: {self.trigger.value}) {status}: {self.message}"]
        if self.old_plan_path:
            lines.append(f"Backup: {self.old_plan_path}")
        if self.diff is not None and not self.diff.is_empty():
            lines.append(self.diff.summary())
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "trigger": self.trigger.value,
            "strategy": self.strategy.value,
            "old_plan_path": self.old_plan_path,
            "new_plans": [p.to_dict() for p in self.new_plans],
            "diff": self.diff.to_dict() if self.diff else None,
            "timestamp": self.timestamp.isoformat(),
        }


class ReplanStrategy(ABC):
    """Base class for replanning strategies."""

    @property
    @abstractmethod
    def strategy_type(self) -> ReplanStrategyType:
        """Return the strategy type."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description."""
        ...

    @abstractmethod
    def execute(self, state: ReplanState, trigger: TriggerType) -> ReplanResult:
        """Produce a new plan for the given state and trigger.

        Args:
            state: Current run state. Not modified.
            trigger: The trigger that fired.

        Returns:
            ReplanResult with new_plans and diff on success.
        """
        ...


def _keywords(text: str) -> list[str]:
    return [w for w in text.lower().split() if len(w) >= _MIN_KEYWORD_LEN]


class IncrementalStrategy(ReplanStrategy):
    """Rule-based adjustment of the remaining plan."""

    @property
    def strategy_type(self) -> ReplanStrategyType:
        return ReplanStrategyType.INCREMENTAL

    @property
    def description(self) -> str:
        return "Adjust remaining features based on completed work and current state"

    def execute(self, state: ReplanState, trigger: TriggerType) -> ReplanResult:
        if not state.plans:
            return ReplanResult(
                success=False,
                message="No plans to replan",
                trigger=trigger,
                strategy=self.strategy_type,
            )

        new_plans = copy_plans(state.plans)

        if trigger == TriggerType.TEST_FAILURE:
            adjustments = self._handle_test_failure(new_plans, state)
        elif trigger == TriggerType.BLOCKED_FEATURE:
            adjustments = self._handle_blocked_feature(new_plans, state)
        elif trigger == TriggerType.REQUIREMENT_CHANGE:
            adjustments = self._handle_requirement_change(new_plans)
        else:
            adjustments = ["General plan validation performed"]

        if not adjustments:
            adjustments = ["No adjustments needed"]

        return ReplanResult(
            success=True,
            message=f"Incremental replan completed: {'; '.join(adjustments)}",
            trigger=trigger,
            strategy=self.strategy_type,
            new_plans=new_plans,
            diff=compute_diff(state.plans, new_plans),
        )

    def _handle_test_failure(self, plans: list[Plan], state: ReplanState) -> list[str]:
        adjustments: list[str] = []

        current = get_by_id(plans, state.feature_id)
        if current is not None and current.is_pending:
            if len(current.steps) > SPLIT_STEP_THRESHOLD:
                adjustments.append(
                    f"Feature #{current.id} has {len(current.steps)} steps - "
                    "consider breaking into smaller tasks"
                )
            if REVIEW_MARKER not in current.description:
                current.description = f"{current.description} {REVIEW_NOTE}"
                adjustments.append(f"Marked feature #{current.id} for review")

        adjustments.extend(self._identify_prerequisites(plans, state.feature_id))
        return adjustments

    def _handle_blocked_feature(self, plans: list[Plan], state: ReplanState) -> list[str]:
        adjustments: list[str] = []

        blocked = set(state.blocked_features)
        for p in plans:
            if p.id in blocked and not p.deferred:
                p.deferred = True
                p.defer_reason = DeferReason.BLOCKED.value
                adjustments.append(f"Deferred blocked feature #{p.id}")

        head = next_pending(plans)
        if head is not None:
            adjustments.append(f"Next feature to work on: #{head.id}")
        else:
            adjustments.append("No remaining features to work on")

        return adjustments

    def _handle_requirement_change(self, plans: list[Plan]) -> list[str]:
        tested = sum(1 for p in plans if p.tested)
        deferred = sum(1 for p in plans if not p.tested and p.deferred)
        untested = len(plans) - tested - deferred
        return [f"Plan reconciled: {tested} tested, {untested} untested, {deferred} deferred"]

    def _identify_prerequisites(self, plans: list[Plan], current_id: int) -> list[str]:
        """Flag earlier untested features that look related to the current one.

        Heuristic: the current description mentions the earlier feature's
        category or one of its longer words.
        """
        current = get_by_id(plans, current_id)
        if current is None:
            return []

        current_text = current.description.lower()
        flagged: list[str] = []
        for p in plans:
            if p.id >= current_id or p.deferred or p.tested:
                continue
            category = p.category.lower()
            related = (category and category in current_text) or any(
                word in current_text for word in _keywords(p.description)
            )
            if related:
                flagged.append(f"Feature #{current_id} may depend on untested feature #{p.id}")
        return flagged


def run_agent_command(agent_cmd: str, prompt: str, timeout: int | None = 600) -> str:
    """Run the agent command with the prompt as its last argument.

    Raises:
        AgentExecutionError: If the command cannot start, times out or
            exits non-zero.
    """
    args = shlex.split(agent_cmd) + [prompt]
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise AgentExecutionError(f"agent command not found: {args[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise AgentExecutionError(f"agent timed out after {timeout}s") from e

    output = (result.stdout or "").strip()
    if result.stderr:
        output = f"{output}\n{result.stderr.strip()}".strip()

    if result.returncode != 0:
        raise AgentExecutionError(f"agent exited with code {result.returncode}", output=output)
    return output


_AGENT_INSTRUCTIONS: dict[TriggerType, list[str]] = {
    TriggerType.TEST_FAILURE: [
        "Multiple test failures have occurred. Please analyze the current plan and suggest:",
        "1. Whether the current feature should be broken into smaller steps",
        "2. If there are missing prerequisite features",
        "3. An updated plan that addresses the failures",
    ],
    TriggerType.BLOCKED_FEATURE: [
        "One or more features are blocked. Please suggest:",
        "1. Alternative approaches or workarounds",
        "2. Reordering of remaining features",
        "3. Whether blocked features should be deferred",
    ],
    TriggerType.REQUIREMENT_CHANGE: [
        "Requirements have changed. Please:",
        "1. Validate the updated plan for consistency",
        "2. Suggest any necessary adjustments",
        "3. Identify any new dependencies",
    ],
}


class AgentBasedStrategy(ReplanStrategy):
    """Ask the external agent for an updated plan."""

    def __init__(self, runner: AgentRunner):
        self.runner = runner

    @classmethod
    def from_command(cls, agent_cmd: str, timeout: int | None = 600) -> AgentBasedStrategy:
        return cls(lambda prompt: run_agent_command(agent_cmd, prompt, timeout))

    @property
    def strategy_type(self) -> ReplanStrategyType:
        return ReplanStrategyType.AGENT

    @property
    def description(self) -> str:
        return "Use AI agent to analyze current state and generate updated plan"

    def build_prompt(self, state: ReplanState, trigger: TriggerType) -> str:
        blocked = ", ".join(str(i) for i in state.blocked_features) or "none"
        lines = [
            "You are helping replan a software development project.",
            "",
            f"REPLAN TRIGGER: {trigger.value}",
            "",
            "CURRENT STATE:",
            f"- Total iterations run: {state.total_iterations}",
            f"- Current feature ID: {state.feature_id}",
            f"- Consecutive failures: {state.consecutive_failures}",
            f"- Recent failure types: {', '.join(state.failure_types) or 'none'}",
            f"- Blocked features: {blocked}",
            "",
            "CURRENT PLAN:",
        ]
        for p in state.plans:
            status = "[x]" if p.tested else "[D]" if p.deferred else "[ ]"
            lines.append(f"  {status} #{p.id} [{p.category}]: {p.description}")

        lines.extend(["", "INSTRUCTIONS:"])
        lines.extend(
            _AGENT_INSTRUCTIONS.get(
                trigger,
                ["Please analyze the current state and suggest improvements to the plan."],
            )
        )
        lines.extend(
            [
                "",
                "Output an updated plan.json array. Keep the same structure and IDs where possible.",
            ]
        )
        return "\n".join(lines)

    def execute(self, state: ReplanState, trigger: TriggerType) -> ReplanResult:
        """Run the agent and parse its plan.

        Raises:
            AgentExecutionError: If the agent fails.
            PlanParseError: If no plan array can be parsed from its output.
        """
        prompt = self.build_prompt(state, trigger)
        logger.info(f"Requesting replan from agent (trigger: {trigger.value})")

        output = self.runner(prompt)
        new_plans = extract_plans_from_output(output)

        return ReplanResult(
            success=True,
            message=f"Agent-based replanning completed ({len(new_plans)} feature(s))",
            trigger=trigger,
            strategy=self.strategy_type,
            new_plans=new_plans,
            diff=compute_diff(state.plans, new_plans),
        )
