"""Per-feature consecutive failure tracking."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace

from .classifier import Failure

logger = logging.getLogger(__name__)


class FailureTracker:
    """Tracks consecutive failures for each feature.

    Each feature moves Clean -> Failing(n) -> Escalated independently.
    The counter only goes back to zero on success, skip or replan; the
    failure log is kept for the whole run.
    """

    def __init__(self, max_retries: int):
        self.max_retries = max_retries
        self._failures: dict[int, list[Failure]] = {}
        self._retry_counts: dict[int, int] = {}
        self._recovered: set[int] = set()

    def record_failure(self, failure: Failure) -> Failure:
        """Record a failure and return it stamped with the new retry count."""
        feature_id = failure.feature_id
        count = self._retry_counts.get(feature_id, 0) + 1
        self._retry_counts[feature_id] = count

        recorded = replace(failure, retry_count=count)
        self._failures.setdefault(feature_id, []).append(recorded)
        return recorded

    def get_retry_count(self, feature_id: int) -> int:
        return self._retry_counts.get(feature_id, 0)

    def can_retry(self, feature_id: int) -> bool:
        """True while the feature is still under its retry budget."""
        return self.get_retry_count(feature_id) < self.max_retries

    def get_failures(self, feature_id: int) -> list[Failure]:
        return list(self._failures.get(feature_id, []))

    def reset_feature(self, feature_id: int) -> None:
        """Reset the consecutive counter (skip, replan)."""
        self._retry_counts[feature_id] = 0

    def record_success(self, feature_id: int) -> bool:
        """Reset after a successful iteration.

        Returns:
            True if the feature had been failing, i.e. it recovered.
        """
        recovered = self.get_retry_count(feature_id) > 0
        if recovered:
            self._recovered.add(feature_id)
            logger.info(f"Feature #{feature_id} recovered after {self.get_retry_count(feature_id)} failure(s)")
        self._retry_counts[feature_id] = 0
        return recovered

    @property
    def recovered_count(self) -> int:
        """Number of features that succeeded after failing."""
        return len(self._recovered)

    @property
    def total_failures(self) -> int:
        return sum(len(f) for f in self._failures.values())

    def summary(self) -> str:
        """Human-readable summary of all recorded failures."""
        if not self._failures:
            return "No failures recorded"

        lines = ["Failure Summary:"]
        for feature_id, failures in sorted(self._failures.items()):
            lines.append(f"  Feature #{feature_id}: {len(failures)} failure(s)")
            by_kind = Counter(f.kind.value for f in failures)
            for kind, count in sorted(by_kind.items()):
                lines.append(f"    - {kind}: {count}")

        lines.append(f"Total failures: {self.total_failures}")
        return "\n".join(lines)
