from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class FastStagedError(RuntimeError):
    """Base class for failures that abort a run before or around dispatch."""


class ConfigNotFoundError(FastStagedError):
    def __init__(self, checked_paths: Sequence[Path]) -> None:
        self.checked_paths = list(checked_paths)
        rendered = ", ".join(str(path) for path in self.checked_paths)
        super().__init__(f"Configuration file not found. Checked paths: {rendered}")


class ConfigInvalidError(FastStagedError):
    def __init__(self, path: Path, details: str) -> None:
        self.path = path
        self.details = details
        super().__init__(f"Invalid configuration in {path}: {details}")


class NotGitRepositoryError(FastStagedError):
    def __init__(self, directory: Path) -> None:
        self.directory = directory
        super().__init__(f"Not a git repository. Current directory: {directory}")


class GitError(FastStagedError):
    """Raised when a git invocation fails for reasons other than a missing repository."""


class NoStagedFilesError(FastStagedError):
    def __init__(self) -> None:
        super().__init__("No staged files found. Run 'git add' to stage files.")


class NoFilesMatchedError(FastStagedError):
    def __init__(self, patterns: Sequence[str]) -> None:
        self.patterns = list(patterns)
        super().__init__(
            "No files matched any patterns. Patterns checked: " + ", ".join(self.patterns)
        )


class CommandNotFoundError(FastStagedError):
    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to execute command '{command}': {reason}")


class TaskJoinError(FastStagedError):
    """Raised when an execution unit itself crashed instead of recording a task status."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{type(exc).__name__}: {exc}" for exc in self.errors)
        super().__init__(f"Task join error: {summary}")
