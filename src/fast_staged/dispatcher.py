from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache

from fast_staged.config import ExecutionOrder, Group
from fast_staged.errors import NoFilesMatchedError

BRACE_PATTERN = re.compile(r"\{([^{}]*)\}")


@dataclass(slots=True, frozen=True)
class WorkItem:
    """One command to run against one staged file."""

    file: str
    command: str
    group: str
    timeout: float | None
    order: ExecutionOrder


@lru_cache(maxsize=256)
def _expand_braces(pattern: str) -> tuple[str, ...]:
    match = BRACE_PATTERN.search(pattern)
    if match is None:
        return (pattern,)
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(_expand_braces(f"{head}{option}{tail}"))
    return tuple(expanded)


def _match_segments(parts: Sequence[str], segments: Sequence[str]) -> bool:
    if not parts:
        return not segments
    head, rest = parts[0], parts[1:]
    if head == "**":
        # Spans zero or more whole directories.
        return any(_match_segments(rest, segments[index:]) for index in range(len(segments) + 1))
    if not segments:
        return False
    return fnmatch.fnmatchcase(segments[0], head) and _match_segments(rest, segments[1:])


def _match_single(pattern: str, path: str) -> bool:
    if "/" not in pattern:
        return fnmatch.fnmatchcase(path.rsplit("/", 1)[-1], pattern)
    return _match_segments(pattern.strip("/").split("/"), path.split("/"))


def matches(pattern: str, path: str) -> bool:
    normalized = path.replace("\\", "/")
    return any(_match_single(option, normalized) for option in _expand_braces(pattern))


def _first_match(groups: Sequence[Group], path: str) -> tuple[Group, list[str]] | None:
    for group in groups:
        for pattern, commands in group.patterns.items():
            if matches(pattern, path):
                return group, commands
    return None


def match(groups: Sequence[Group], changed_files: Iterable[str]) -> list[WorkItem]:
    """Map staged files onto work items.

    Each file is claimed by the first group, in declaration order, that has a
    matching pattern; every command listed under that pattern becomes one
    work item. Files matching nothing are dropped.
    """
    files = list(changed_files)
    items: list[WorkItem] = []
    for path in files:
        hit = _first_match(groups, path)
        if hit is None:
            continue
        group, commands = hit
        items.extend(
            WorkItem(
                file=path,
                command=command,
                group=group.name,
                timeout=group.timeout,
                order=group.execution_order,
            )
            for command in commands
        )

    if files and not items:
        patterns = [pattern for group in groups for pattern in group.patterns]
        raise NoFilesMatchedError(patterns)
    return items
