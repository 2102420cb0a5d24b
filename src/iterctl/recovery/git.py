"""Git working tree operations used by rollback recovery."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ..errors import RollbackError

logger = logging.getLogger(__name__)


class GitWorkspace:
    """The working tree the agent edits.

    Rollback only reverts tracked files; untracked files created by the
    agent are left alone.
    """

    def __init__(self, path: Path | None = None):
        self.path = path

    @property
    def _cwd(self) -> str | None:
        return str(self.path) if self.path else None

    def is_repo(self) -> bool:
        """Check if the workspace is inside a git work tree."""
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--is-inside-work-tree"],
                capture_output=True,
                text=True,
                cwd=self._cwd,
                check=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.debug(f"git rev-parse failed: {e}")
            return False
        return result.stdout.strip() == "true"

    def has_uncommitted_changes(self) -> bool:
        """Check for modified or staged tracked files.

        Untracked files are ignored since discard_changes leaves them in place.
        """
        try:
            result = subprocess.run(
                ["git", "status", "--porcelain", "--untracked-files=no"],
                capture_output=True,
                text=True,
                cwd=self._cwd,
                check=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.warning(f"git status failed: {e}")
            return False
        return bool(result.stdout.strip())

    def current_commit(self) -> str | None:
        """Short hash of HEAD, or None outside a repository."""
        try:
            result = subprocess.run(
                ["git", "rev-parse", "HEAD"],
                capture_output=True,
                text=True,
                cwd=self._cwd,
                check=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError):
            return None
        return result.stdout.strip()[:12]

    def discard_changes(self) -> None:
        """Reset the working tree to the last commit.

        Raises:
            RollbackError: If git could not restore tracked files.
        """
        try:
            # Unstage first; nothing staged is not an error
            subprocess.run(
                ["git", "reset", "HEAD", "--"],
                capture_output=True,
                cwd=self._cwd,
            )
            subprocess.run(
                ["git", "checkout", "--", "."],
                capture_output=True,
                text=True,
                cwd=self._cwd,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise RollbackError(f"git checkout failed: {stderr or e}") from e
        except FileNotFoundError as e:
            raise RollbackError("git executable not found") from e

        logger.info("Discarded uncommitted changes in working tree")
