"""Commits of the pipeline's own tracking files. Never fatal."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)


class GitTrackingCommitter:
    def __init__(self, repo_root: Path, paths: Sequence[Path], *, git: str = "git") -> None:
        self.repo_root = repo_root
        self.paths = list(paths)
        self.git = git

    def _git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.git, *args],
            cwd=str(self.repo_root),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )

    def __call__(self, message: str) -> bool:
        """Stage the tracking files and commit them. Returns True if a commit was made."""
        existing = [str(path) for path in self.paths if path.is_file()]
        if not existing:
            return False
        try:
            status = self._git("status", "--porcelain", "--", *existing)
            if status.returncode != 0:
                logger.warning("git status failed: %s", status.stderr.strip())
                return False
            if not status.stdout.strip():
                logger.info("No uncommitted changes to tracking files")
                return False
            added = self._git("add", "--", *existing)
            if added.returncode != 0:
                logger.warning("git add failed: %s", added.stderr.strip())
                return False
            committed = self._git("commit", "-m", message, "--", *existing)
        except OSError as exc:
            logger.warning("Unable to run git: %s", exc)
            return False
        if committed.returncode != 0:
            logger.warning("Nothing committed: %s", (committed.stderr or committed.stdout).strip())
            return False
        logger.info("Committed tracking files: %s", message)
        return True
