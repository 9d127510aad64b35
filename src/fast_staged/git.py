from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from fast_staged.errors import GitError, NoStagedFilesError, NotGitRepositoryError

logger = logging.getLogger(__name__)


class StagedFiles:
    """Reads the list of files staged in the git index."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        if not self._is_git_repo():
            raise NotGitRepositoryError(self.repo_root)

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found in PATH") from exc
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def top_level(self) -> Path:
        return Path(self._run_git(["rev-parse", "--show-toplevel"]).stdout.strip())

    def list(self) -> list[str]:
        """Return staged paths relative to the repository root, in index order."""
        proc = self._run_git(
            ["diff", "--cached", "--name-only", "--diff-filter=ACMR", "-z"]
        )
        files = [entry for entry in proc.stdout.split("\0") if entry]
        logger.debug("found %d staged file(s) in %s", len(files), self.repo_root)
        if not files:
            raise NoStagedFilesError()
        return files
