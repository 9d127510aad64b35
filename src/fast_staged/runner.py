from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from fast_staged import dispatcher
from fast_staged.config import StagedConfig, resolve_config
from fast_staged.dispatcher import WorkItem
from fast_staged.errors import ConfigNotFoundError
from fast_staged.git import StagedFiles
from fast_staged.pool import TaskPool
from fast_staged.render import ProgressObserver
from fast_staged.task import Status, Task, TaskEventHook

logger = logging.getLogger(__name__)

ObserverFactory = Callable[[TaskPool, int], ProgressObserver]


@dataclass(slots=True)
class RunPlan:
    repo_root: Path
    config: StagedConfig
    changed_files: list[str]
    work_items: list[WorkItem]


@dataclass(slots=True)
class RunSummary:
    total_files: int
    tasks: list[Task]
    elapsed: float
    total_execution_time: float
    join_errors: list[BaseException] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def _count(self, status: Status) -> int:
        return sum(1 for task in self.tasks if task.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(Status.DONE)

    @property
    def failed(self) -> int:
        return self._count(Status.FAILED)

    @property
    def timed_out(self) -> int:
        return self._count(Status.TIMEOUT)

    @property
    def problem_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status in (Status.FAILED, Status.TIMEOUT)]

    @property
    def ok(self) -> bool:
        return not self.problem_tasks and not self.join_errors


def _load_config(directory: Path, repo_root: Path, config_path: Path | None) -> StagedConfig:
    if config_path is not None or directory == repo_root:
        return resolve_config(directory, config_path)
    try:
        return resolve_config(directory)
    except ConfigNotFoundError as first:
        try:
            return resolve_config(repo_root)
        except ConfigNotFoundError as second:
            raise ConfigNotFoundError(first.checked_paths + second.checked_paths) from None


def plan_staged(directory: Path, config_path: Path | None = None) -> RunPlan:
    """Resolve everything needed for a run without spawning any command.

    Staged files are read first, so an empty index is reported before the
    configuration is even looked at.
    """
    staged = StagedFiles(directory)
    changed_files = staged.list()
    repo_root = staged.top_level()
    config = _load_config(directory.resolve(), repo_root, config_path)
    work_items = dispatcher.match(config.groups(), changed_files)
    logger.debug(
        "planned %d work item(s) for %d staged file(s) using %s",
        len(work_items),
        len(changed_files),
        config.source,
    )
    return RunPlan(
        repo_root=repo_root,
        config=config,
        changed_files=changed_files,
        work_items=work_items,
    )


def _default_observer(pool: TaskPool, total_files: int) -> ProgressObserver:
    return ProgressObserver(pool, total_files)


async def execute_plan(
    plan: RunPlan,
    *,
    observer_factory: ObserverFactory | None = None,
    event_hook: TaskEventHook | None = None,
) -> RunSummary:
    pool = TaskPool(cwd=plan.repo_root, event_hook=event_hook)
    await pool.dispatch(plan.work_items)
    observer = (observer_factory or _default_observer)(pool, len(plan.changed_files))
    try:
        snapshot = await observer.watch()
    except asyncio.CancelledError:
        await pool.shutdown()
        raise

    return RunSummary(
        total_files=len(plan.changed_files),
        tasks=pool.tasks,
        elapsed=snapshot.elapsed,
        total_execution_time=snapshot.total_execution_time,
        join_errors=pool.join_errors,
    )


async def run_staged(
    directory: Path,
    config_path: Path | None = None,
    *,
    observer_factory: ObserverFactory | None = None,
    event_hook: TaskEventHook | None = None,
) -> RunSummary:
    plan = plan_staged(directory, config_path)
    return await execute_plan(plan, observer_factory=observer_factory, event_hook=event_hook)
