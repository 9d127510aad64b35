from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fast_staged.config import ExecutionOrder
from fast_staged.dispatcher import WorkItem
from fast_staged.errors import CommandNotFoundError, TaskJoinError
from fast_staged.task import STATUS_SYMBOLS, Status, Task, TaskEventHook, command_exists

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CommandStats:
    count: int
    total_duration: float

    @property
    def average(self) -> float:
        return self.total_duration / self.count if self.count else 0.0


@dataclass(slots=True, frozen=True)
class DisplayLine:
    symbol: str
    text: str
    status: Status
    duration: float | None


@dataclass(slots=True)
class _GroupBatch:
    name: str
    order: ExecutionOrder
    items: list[WorkItem]


def partition(work_items: Iterable[WorkItem]) -> list[_GroupBatch]:
    """Bucket items by group name, keeping first-seen order and policy."""
    batches: dict[str, _GroupBatch] = {}
    for item in work_items:
        batch = batches.get(item.group)
        if batch is None:
            batch = _GroupBatch(name=item.group, order=item.order, items=[])
            batches[item.group] = batch
        batch.items.append(item)
    return list(batches.values())


class TaskPool:
    """Owns every Task of a run and the execution units driving them.

    Completion is tracked per execution unit: one per parallel task, one per
    sequential group. ``is_complete`` flips to true only after every unit has
    been joined through ``pull_completed``.
    """

    def __init__(
        self,
        *,
        cwd: Path | None = None,
        event_hook: TaskEventHook | None = None,
    ) -> None:
        self.cwd = cwd
        self.event_hook = event_hook
        self._tasks: list[Task] = []
        self._units: set[asyncio.Task[None]] = set()
        self._outstanding = 0
        self._lock = threading.Lock()
        self._join_errors: list[BaseException] = []

    @property
    def tasks(self) -> list[Task]:
        with self._lock:
            return list(self._tasks)

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    @property
    def join_errors(self) -> list[BaseException]:
        with self._lock:
            return list(self._join_errors)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._tasks

    def is_complete(self) -> bool:
        return self.outstanding == 0

    @staticmethod
    def preflight(work_items: Sequence[WorkItem]) -> None:
        checked: set[str] = set()
        for item in work_items:
            if item.command in checked:
                continue
            checked.add(item.command)
            if not command_exists(item.command):
                raise CommandNotFoundError(item.command, "Command not found in PATH")

    def _new_task(self, item: WorkItem) -> Task:
        task = Task.from_work_item(item, cwd=self.cwd, event_hook=self.event_hook)
        with self._lock:
            self._tasks.append(task)
        return task

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        unit = asyncio.get_running_loop().create_task(coro, name=name)
        with self._lock:
            self._units.add(unit)
            self._outstanding += 1

    async def dispatch(self, work_items: Sequence[WorkItem]) -> list[Task]:
        """Validate, partition and start every work item.

        Raises ``CommandNotFoundError`` before anything is created when any
        command cannot be resolved. Returns once all execution units are
        scheduled; it does not wait for them to start or finish, so every
        returned task is still waiting.
        """
        items = list(work_items)
        self.preflight(items)

        created: list[Task] = []
        for batch in partition(items):
            if batch.order is ExecutionOrder.SEQUENTIAL:
                chain = [self._new_task(item) for item in batch.items]
                created.extend(chain)
                self._spawn(self._run_chain(chain), name=f"group:{batch.name}")
                logger.debug(
                    "group %s: %d task(s) queued sequentially", batch.name, len(chain)
                )
                continue

            for item in batch.items:
                task = self._new_task(item)
                created.append(task)
                self._spawn(self._run_one(task), name=f"task:{item.command}:{item.file}")
            logger.debug("group %s: %d task(s) started in parallel", batch.name, len(batch.items))

        return created

    @staticmethod
    async def _run_one(task: Task) -> None:
        await task.run(task.timeout)

    @staticmethod
    async def _run_chain(chain: Sequence[Task]) -> None:
        errors: list[BaseException] = []
        for task in chain:
            try:
                await task.run(task.timeout)
            except Exception as exc:
                logger.exception("%r crashed; continuing with the rest of its group", task)
                errors.append(exc)
        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise TaskJoinError(errors)

    async def pull_completed(self, timeout: float | None = None) -> int:
        """Join every finished execution unit, waiting up to ``timeout`` for one.

        Returns the number of units joined. A unit that crashed is still
        counted as joined; its exception is collected and raised as
        ``TaskJoinError`` once bookkeeping is done.
        """
        with self._lock:
            pending = set(self._units)
        if not pending:
            return 0

        finished, _ = await asyncio.wait(
            pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        errors: list[BaseException] = []
        with self._lock:
            for unit in finished:
                self._units.discard(unit)
                self._outstanding -= 1
                if unit.cancelled():
                    continue
                exc = unit.exception()
                if isinstance(exc, TaskJoinError):
                    errors.extend(exc.errors)
                elif exc is not None:
                    errors.append(exc)
            self._join_errors.extend(errors)

        for exc in errors:
            logger.error("execution unit crashed: %s", exc, exc_info=exc)
        if errors:
            raise TaskJoinError(errors)
        return len(finished)

    async def drain(self, poll_interval: float | None = None) -> None:
        """Pull until every unit has been joined, then surface any join errors."""
        errors: list[BaseException] = []
        while not self.is_complete():
            try:
                await self.pull_completed(poll_interval)
            except TaskJoinError as exc:
                errors.extend(exc.errors)
        if errors:
            raise TaskJoinError(errors)

    async def shutdown(self) -> None:
        """Cancel live units; their tasks kill and reap the child processes."""
        with self._lock:
            units = list(self._units)
        for unit in units:
            unit.cancel()
        if units:
            await asyncio.gather(*units, return_exceptions=True)
        with self._lock:
            for unit in units:
                if unit in self._units:
                    self._units.discard(unit)
                    self._outstanding -= 1

    def status_counts(self) -> dict[Status, int]:
        counts = {status: 0 for status in Status}
        for task in self.tasks:
            counts[task.status] += 1
        return counts

    def aggregate_stats(self) -> dict[str, CommandStats]:
        totals: dict[str, tuple[int, float]] = {}
        for task in self.tasks:
            count, total = totals.get(task.command, (0, 0.0))
            # done is published after duration, so only finished tasks contribute.
            duration = (task.duration or 0.0) if task.done else 0.0
            totals[task.command] = (count + 1, total + duration)
        return {
            command: CommandStats(count=count, total_duration=total)
            for command, (count, total) in totals.items()
        }

    def total_execution_time(self) -> float:
        total = 0.0
        for task in self.tasks:
            if task.done and task.status in (Status.DONE, Status.FAILED):
                total += task.duration or 0.0
        return total

    def display_lines(self) -> list[DisplayLine]:
        lines: list[DisplayLine] = []
        for task in self.tasks:
            finished = task.done
            status = task.status
            duration = task.duration if finished else None
            text = f"{task.file}: {task.command}"
            if duration is not None:
                text += f" - {round(duration * 1000)}ms"
            if finished and task.error:
                text += f" ({task.error})"
            lines.append(
                DisplayLine(
                    symbol=STATUS_SYMBOLS[status],
                    text=text,
                    status=status,
                    duration=duration,
                )
            )
        return lines
