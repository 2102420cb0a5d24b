"""Content-addressed plan backups.

Before every replan the live plan file is copied to a sibling
``<stem>.bak.<N><suffix>`` file. Backups are numbered 1, 2, 3, ... and
identical content is never stored twice.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import BackupError, InvalidVersionError
from ..plan import Plan

logger = logging.getLogger(__name__)


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def calculate_plan_hash(plan_path: str | Path) -> str:
    """Hash of the plan file's bytes."""
    return hash_bytes(Path(plan_path).read_bytes())


def calculate_plans_hash(plans: list[Plan]) -> str:
    """Hash of a plan list's content, independent of file formatting."""
    data = json.dumps([p.to_dict() for p in plans], sort_keys=True, separators=(",", ":"))
    return hash_bytes(data.encode())


@dataclass(frozen=True)
class PlanVersion:
    """A recorded plan backup."""

    version: int
    timestamp: datetime
    trigger: str
    path: Path
    content_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "trigger": self.trigger,
            "path": str(self.path),
            "hash": self.content_hash,
        }


class PlanVersioner:
    """Backup/restore of a plan file, keyed by content hash."""

    def __init__(self, plan_path: str | Path):
        self.plan_path = Path(plan_path)
        self._versions: list[PlanVersion] = []
        self._by_hash: dict[str, PlanVersion] = {}

    @property
    def _pattern(self) -> re.Pattern[str]:
        stem = re.escape(self.plan_path.stem)
        suffix = re.escape(self.plan_path.suffix)
        return re.compile(rf"^{stem}\.bak\.(\d+){suffix}$")

    def backup_path(self, version: int) -> Path:
        return self.plan_path.with_name(f"{self.plan_path.stem}.bak.{version}{self.plan_path.suffix}")

    def _record(self, version: PlanVersion) -> None:
        self._versions.append(version)
        self._by_hash.setdefault(version.content_hash, version)

    def create_backup(self, trigger: str = "") -> Path:
        """Back up the current plan file.

        Args:
            trigger: What caused the backup (recorded in the version).

        Returns:
            Path of the backup. If the same content was already backed up,
            the existing backup's path is returned and nothing is written.

        Raises:
            BackupError: If the plan cannot be read or the backup written.
        """
        try:
            data = self.plan_path.read_bytes()
        except OSError as e:
            raise BackupError(f"failed to read plan file {self.plan_path}: {e}") from e

        content_hash = hash_bytes(data)
        existing = self._by_hash.get(content_hash)
        if existing is not None:
            logger.debug(f"Plan content unchanged since version {existing.version}")
            return existing.path

        next_version = len(self._versions) + 1
        path = self.backup_path(next_version)
        if path.exists():
            # Numbering stays dense, so a stray out-of-sequence file is replaced
            logger.warning(f"Overwriting unrecorded backup file {path}")
        try:
            path.write_bytes(data)
        except OSError as e:
            raise BackupError(f"failed to write backup {path}: {e}") from e

        self._record(
            PlanVersion(
                version=next_version,
                timestamp=datetime.now(),
                trigger=str(getattr(trigger, "value", trigger)),
                path=path,
                content_hash=content_hash,
            )
        )
        logger.info(f"Backed up plan as version {next_version}: {path}")
        return path

    @property
    def versions(self) -> list[PlanVersion]:
        return list(self._versions)

    def latest(self) -> PlanVersion | None:
        return self._versions[-1] if self._versions else None

    def restore_version(self, version: int) -> None:
        """Copy a backup's bytes back onto the live plan file.

        Raises:
            InvalidVersionError: If ``version`` is not in 1..len(versions).
            BackupError: If the backup cannot be read or the plan written.
        """
        if version < 1 or version > len(self._versions):
            raise InvalidVersionError(version, len(self._versions))

        entry = self._versions[version - 1]
        try:
            data = entry.path.read_bytes()
        except OSError as e:
            raise BackupError(f"failed to read backup {entry.path}: {e}") from e

        try:
            self.plan_path.write_bytes(data)
        except OSError as e:
            raise BackupError(f"failed to restore plan {self.plan_path}: {e}") from e

        logger.info(f"Restored plan from version {version} ({entry.path})")

    def discover_backups(self) -> int:
        """Load backups left by earlier runs.

        Only the contiguous sequence starting at 1 is loaded so numbering
        stays dense.

        Returns:
            Number of versions discovered.
        """
        directory = self.plan_path.parent
        if not directory.is_dir():
            return 0

        found: dict[int, Path] = {}
        pattern = self._pattern
        for candidate in directory.iterdir():
            match = pattern.match(candidate.name)
            if match and candidate.is_file():
                found[int(match.group(1))] = candidate

        discovered = 0
        number = len(self._versions) + 1
        while number in found:
            path = found.pop(number)
            try:
                data = path.read_bytes()
                mtime = datetime.fromtimestamp(path.stat().st_mtime)
            except OSError as e:
                logger.warning(f"Skipping unreadable backup {path}: {e}")
                break
            self._record(
                PlanVersion(
                    version=number,
                    timestamp=mtime,
                    trigger="",
                    path=path,
                    content_hash=hash_bytes(data),
                )
            )
            discovered += 1
            number += 1

        if found:
            stray = ", ".join(str(p.name) for p in sorted(found.values()))
            logger.warning(f"Ignoring non-contiguous plan backups: {stray}")

        return discovered
