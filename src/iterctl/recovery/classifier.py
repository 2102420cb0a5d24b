"""Failure classification for iteration output.

Turns raw agent/tool output plus an exit status into a Failure record:
- test_failure: explicit test failure markers
- typecheck_failure: type check, compile and build errors
- timeout: timeout markers
- agent_error: non-zero exit with no recognised marker

When several signals are present the order above decides.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)


class FailureType(str, Enum):
    """Kinds of feature-level failure."""

    TEST = "test_failure"
    TYPECHECK = "typecheck_failure"
    TIMEOUT = "timeout"
    AGENT_ERROR = "agent_error"


@dataclass(frozen=True)
class Failure:
    """A detected problem in one iteration of one feature."""

    kind: FailureType
    message: str
    feature_id: int
    iteration: int
    output: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    retry_count: int = 0

    def __str__(self) -> str:
        return (
            f"[{self.kind.value}] {self.message} "
            f"(feature #{self.feature_id}, iteration {self.iteration}, retries: {self.retry_count})"
        )


TEST_FAILURE_PATTERNS: list[str] = [
    "test failed",
    "tests failed",
    "assertion failed",
    "--- fail:",
    "=== fail",
]

# Go-style package failure line, e.g. "FAIL github.com/org/repo/pkg"
_GO_FAIL_LINE = re.compile(r"FAIL\s+(github\.com|gitlab\.com|bitbucket\.org|[a-z]+/[a-z]+)", re.I)
_BARE_FAIL = re.compile(r"\bFAIL\b", re.I)

TYPECHECK_PATTERNS: list[str] = [
    "cannot find module",
    "cannot find package",
    "cannot find",
    "undefined:",
    "type error",
    "syntax error",
    "compilation failed",
    "build failed",
    "could not compile",
    "cannot compile",
    "does not exist",
    "no such file",
    "undeclared name",
    "not declared",
    "import cycle",
]

TIMEOUT_PATTERNS: list[str] = [
    "timeout",
    "timed out",
    "deadline exceeded",
    "context deadline",
]

TEST_CONTEXT_INDICATORS: list[str] = [
    "test",
    "spec",
    "assert",
    "expect",
    "should",
    "describe",
    "it(",
    "--- fail",
    "--- pass",
    "=== run",
    "pytest",
    "jest",
    "mocha",
    "junit",
    "testng",
]

# Keywords used to pick the most relevant output line for each kind
_MESSAGE_KEYWORDS: dict[FailureType, tuple[str, ...]] = {
    FailureType.TEST: ("fail", "error", "panic"),
    FailureType.TYPECHECK: ("error", "cannot", "undefined"),
    FailureType.TIMEOUT: ("timeout", "timed out", "deadline"),
    FailureType.AGENT_ERROR: ("error", "failed"),
}

_DEFAULT_MESSAGES: dict[FailureType, str] = {
    FailureType.TEST: "Test execution failed",
    FailureType.TYPECHECK: "Type check/compilation failed",
    FailureType.TIMEOUT: "Operation timed out",
    FailureType.AGENT_ERROR: "Agent execution error",
}


def is_test_related(output: str) -> bool:
    """Check whether (lowercased) output comes from a test run."""
    return any(indicator in output for indicator in TEST_CONTEXT_INDICATORS)


def _is_test_failure(output: str, lowered: str) -> bool:
    if any(pattern in lowered for pattern in TEST_FAILURE_PATTERNS):
        return True
    if _GO_FAIL_LINE.search(output):
        return True

    if not is_test_related(lowered):
        return False

    # Generic markers only count when the output is clearly from tests
    if _BARE_FAIL.search(output):
        return True
    if "panic:" in lowered:
        return True
    return "error:" in lowered or "failed" in lowered


def _is_typecheck_failure(lowered: str) -> bool:
    return any(pattern in lowered for pattern in TYPECHECK_PATTERNS)


def _is_timeout(lowered: str) -> bool:
    return any(pattern in lowered for pattern in TIMEOUT_PATTERNS)


def classify_output(output: str, exit_code: int = 0) -> FailureType | None:
    """Classify output into a failure kind, or None when nothing failed.

    Args:
        output: Combined stdout/stderr text.
        exit_code: Exit status of the command that produced it.

    Returns:
        The FailureType, or None if no failure signal is present.
    """
    lowered = output.lower()

    if _is_test_failure(output, lowered):
        return FailureType.TEST
    if _is_typecheck_failure(lowered):
        return FailureType.TYPECHECK
    if _is_timeout(lowered):
        return FailureType.TIMEOUT
    if exit_code != 0:
        return FailureType.AGENT_ERROR
    return None


def failure_message(kind: FailureType, output: str) -> str:
    """Pick the first output line relevant to the failure kind."""
    keywords = _MESSAGE_KEYWORDS[kind]
    for line in output.splitlines():
        lowered = line.lower()
        if any(keyword in lowered for keyword in keywords):
            return line.strip()
    return _DEFAULT_MESSAGES[kind]


def detect_failure(
    output: str,
    exit_code: int,
    feature_id: int,
    iteration: int,
) -> Failure | None:
    """Analyze iteration output and exit status for a failure.

    Args:
        output: Raw output text of the iteration.
        exit_code: Exit status (0 = success).
        feature_id: Feature being worked on.
        iteration: Iteration number.

    Returns:
        A Failure, or None if the iteration looks clean.
    """
    kind = classify_output(output, exit_code)
    if kind is None:
        return None

    if kind == FailureType.AGENT_ERROR:
        message = f"Command exited with code {exit_code}"
        detail = failure_message(kind, output)
        if detail != _DEFAULT_MESSAGES[kind]:
            message = f"{message}: {detail}"
    else:
        message = failure_message(kind, output)

    logger.debug(f"Classified feature #{feature_id} iteration {iteration} as {kind.value}: {message}")

    return Failure(
        kind=kind,
        message=message,
        feature_id=feature_id,
        iteration=iteration,
        output=output,
    )
