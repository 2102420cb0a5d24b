"""Tier-1 failure recovery for iterctl.

This module provides:
- Failure classification from raw iteration output
- Per-feature consecutive failure tracking
- Recovery strategies (retry, skip, rollback)
- RecoveryManager tying them together
"""

from .classifier import Failure, FailureType, classify_output, detect_failure
from .git import GitWorkspace
from .manager import RecoveryManager
from .strategies import (
    RecoveryResult,
    RecoveryStrategy,
    RecoveryStrategyType,
    RetryRecoveryStrategy,
    RollbackRecoveryStrategy,
    SkipRecoveryStrategy,
    build_retry_prompt,
    parse_recovery_strategy,
)
from .tracker import FailureTracker

__all__ = [
    # Classifier
    "Failure",
    "FailureType",
    "classify_output",
    "detect_failure",
    # Tracking
    "FailureTracker",
    # Strategies
    "RecoveryResult",
    "RecoveryStrategy",
    "RecoveryStrategyType",
    "RetryRecoveryStrategy",
    "SkipRecoveryStrategy",
    "RollbackRecoveryStrategy",
    "build_retry_prompt",
    "parse_recovery_strategy",
    # Orchestration
    "GitWorkspace",
    "RecoveryManager",
]
