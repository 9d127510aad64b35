from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from typing import TextIO

import click

from fast_staged.errors import TaskJoinError
from fast_staged.pool import CommandStats, DisplayLine, TaskPool
from fast_staged.task import Status

DEFAULT_INTERVAL = 0.033
STATUS_COLORS = {
    Status.DONE: "green",
    Status.FAILED: "red",
    Status.RUNNING: "yellow",
    Status.WAITING: "white",
    Status.TIMEOUT: "magenta",
}


def _ms(seconds: float) -> int:
    return round(seconds * 1000)


@dataclass(slots=True)
class ProgressSnapshot:
    lines: list[DisplayLine]
    stats: dict[str, CommandStats]
    status_counts: dict[Status, int]
    total_execution_time: float
    elapsed: float
    outstanding: int
    total_files: int
    is_empty: bool
    is_complete: bool
    join_errors: list[BaseException] = field(default_factory=list)

    @property
    def task_count(self) -> int:
        return len(self.lines)

    @property
    def finished_count(self) -> int:
        return sum(1 for line in self.lines if line.status.is_terminal)


def render_lines(snapshot: ProgressSnapshot, *, color: bool = True) -> list[str]:
    def style(text: str, **kwargs: object) -> str:
        return click.style(text, **kwargs) if color else text

    verb = "Ran" if snapshot.is_complete else "Running"
    lines = [
        style(
            f"{verb} {snapshot.task_count} tasks for {snapshot.total_files} file(s)...",
            bold=True,
        )
    ]
    for line in snapshot.lines:
        lines.append(style(f"{line.symbol} {line.text}", fg=STATUS_COLORS[line.status]))

    if not snapshot.is_empty:
        lines.append(
            f"Total execution time: {_ms(snapshot.total_execution_time)}ms | "
            f"Elapsed: {_ms(snapshot.elapsed)}ms"
        )

    if snapshot.stats:
        lines.append("")
        lines.append(style("Command Statistics", bold=True))
        stats_lines = [
            f"{command}: {stats.count} execution(s), total {_ms(stats.total_duration)}ms, "
            f"avg {_ms(stats.average)}ms"
            for command, stats in snapshot.stats.items()
        ]
        stats_lines.sort(key=str.lower)
        lines.extend(style(text, fg="cyan") for text in stats_lines)
    return lines


class ProgressObserver:
    """Polls a TaskPool on a fixed cadence and renders what it sees."""

    def __init__(
        self,
        pool: TaskPool,
        total_files: int,
        *,
        interval: float = DEFAULT_INTERVAL,
        stream: TextIO | None = None,
        interactive: bool | None = None,
        quiet: bool = False,
    ) -> None:
        self.pool = pool
        self.total_files = total_files
        self.interval = interval
        self.stream = stream if stream is not None else sys.stdout
        if interactive is None:
            interactive = bool(getattr(self.stream, "isatty", lambda: False)())
        self.interactive = interactive
        self.quiet = quiet
        self.join_errors: list[BaseException] = []
        self._started = time.monotonic()
        self._frozen_elapsed: float | None = None
        self._drawn_lines = 0
        self._reported: set[int] = set()
        self._header_written = False

    def snapshot(self) -> ProgressSnapshot:
        complete = self.pool.is_complete()
        if complete and self._frozen_elapsed is None:
            self._frozen_elapsed = time.monotonic() - self._started
        elapsed = (
            self._frozen_elapsed
            if self._frozen_elapsed is not None
            else time.monotonic() - self._started
        )
        return ProgressSnapshot(
            lines=self.pool.display_lines(),
            stats=self.pool.aggregate_stats(),
            status_counts=self.pool.status_counts(),
            total_execution_time=self.pool.total_execution_time(),
            elapsed=elapsed,
            outstanding=self.pool.outstanding,
            total_files=self.total_files,
            is_empty=self.pool.is_empty(),
            is_complete=complete,
            join_errors=list(self.join_errors),
        )

    def _write(self, text: str) -> None:
        click.echo(text, file=self.stream, color=self.interactive)

    def draw(self, snapshot: ProgressSnapshot) -> None:
        if self.quiet:
            return
        if self.interactive:
            lines = render_lines(snapshot)
            if self._drawn_lines:
                # Move to the start of the previous frame and clear below it.
                click.echo(f"\x1b[{self._drawn_lines}F\x1b[J", file=self.stream, nl=False)
            self._write("\n".join(lines))
            self._drawn_lines = len(lines)
            return

        if not self._header_written:
            self._header_written = True
            self._write(render_lines(snapshot, color=False)[0])
        for index, line in enumerate(snapshot.lines):
            finished = line.status.is_terminal and line.duration is not None
            if finished and index not in self._reported:
                self._reported.add(index)
                self._write(f"{line.symbol} {line.text}")

    def _draw_summary(self, snapshot: ProgressSnapshot) -> None:
        if self.quiet or self.interactive:
            return
        lines = render_lines(snapshot, color=False)
        # Header and task lines were already streamed as they finished.
        self._write("\n".join(lines[snapshot.task_count + 1 :]))

    async def watch(self) -> ProgressSnapshot:
        """Render until the pool reports completion and return the final snapshot."""
        while True:
            try:
                await self.pool.pull_completed(self.interval)
            except TaskJoinError as exc:
                self.join_errors.extend(exc.errors)
            snapshot = self.snapshot()
            self.draw(snapshot)
            if snapshot.is_complete:
                self._draw_summary(snapshot)
                return snapshot
