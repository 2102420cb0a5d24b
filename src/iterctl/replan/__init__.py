"""Tier-2 adaptive replanning for iterctl.

This module provides:
- Replan triggers evaluated over shared run state
- Incremental and agent-based replanning strategies
- Field-level plan diffs
- Content-addressed plan backups with restore
- ReplanManager tying them together
"""

from .diff import PlanChange, PlanDiff, compute_diff
from .manager import ReplanManager
from .strategies import (
    AgentBasedStrategy,
    IncrementalStrategy,
    ReplanResult,
    ReplanStrategy,
    ReplanStrategyType,
    parse_replan_strategy,
    run_agent_command,
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
from .versioning import PlanVersion, PlanVersioner, calculate_plan_hash, calculate_plans_hash

__all__ = [
    # Triggers
    "TriggerType",
    "ReplanState",
    "ReplanTrigger",
    "TestFailureTrigger",
    "RequirementChangeTrigger",
    "BlockedFeatureTrigger",
    "ManualTrigger",
    # Diff
    "PlanChange",
    "PlanDiff",
    "compute_diff",
    # Versioning
    "PlanVersion",
    "PlanVersioner",
    "calculate_plan_hash",
    "calculate_plans_hash",
    # Strategies
    "ReplanResult",
    "ReplanStrategy",
    "ReplanStrategyType",
    "IncrementalStrategy",
    "AgentBasedStrategy",
    "parse_replan_strategy",
    "run_agent_command",
    # Orchestration
    "ReplanManager",
]
