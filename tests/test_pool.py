import asyncio
import sys
import time
from typing import Any

import pytest

from fast_staged.config import ExecutionOrder
from fast_staged.dispatcher import WorkItem
from fast_staged.errors import CommandNotFoundError, TaskJoinError
from fast_staged.pool import CommandStats, TaskPool, partition
from fast_staged.task import Status, Task

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


def _item(
    command: str,
    *,
    file: str = "a.js",
    group: str = "lint",
    order: ExecutionOrder = ExecutionOrder.PARALLEL,
    timeout: float | None = None,
) -> WorkItem:
    return WorkItem(file=file, command=command, group=group, timeout=timeout, order=order)


def test_partition_keeps_first_seen_order_and_policy() -> None:
    batches = partition(
        [
            _item("a", group="ci", order=ExecutionOrder.SEQUENTIAL),
            _item("b", group="lint"),
            _item("c", group="ci", order=ExecutionOrder.PARALLEL),
        ]
    )

    assert [batch.name for batch in batches] == ["ci", "lint"]
    assert batches[0].order is ExecutionOrder.SEQUENTIAL
    assert [item.command for item in batches[0].items] == ["a", "c"]


def test_parallel_group_single_item_stats() -> None:
    async def _run() -> TaskPool:
        pool = TaskPool()
        await pool.dispatch([_item("true $FILE")])
        assert pool.outstanding == 1
        assert pool.is_complete() is False
        await pool.drain()
        return pool

    pool = asyncio.run(_run())

    stats = pool.aggregate_stats()
    assert list(stats) == ["true $FILE"]
    assert stats["true $FILE"].count == 1
    assert stats["true $FILE"].total_duration == pytest.approx(pool.tasks[0].duration)
    assert pool.is_complete() is True


def test_sequential_group_creates_waiting_tasks_and_runs_in_order() -> None:
    events: list[dict[str, Any]] = []
    items = [
        _item("sleep 0.1", file="x.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
        _item("false", file="x.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
        _item("sleep 0.05", file="x.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
    ]

    async def _run() -> tuple[list[Status], TaskPool]:
        pool = TaskPool(event_hook=events.append)
        tasks = await pool.dispatch(items)
        initial = [task.status for task in tasks]
        assert pool.outstanding == 1
        await pool.drain()
        return initial, pool

    initial, pool = asyncio.run(_run())

    assert initial == [Status.WAITING] * 3
    assert [task.status for task in pool.tasks] == [Status.DONE, Status.FAILED, Status.DONE]

    started = [event for event in events if event["event"] == "task_started"]
    finished = [event for event in events if event["event"] == "task_finished"]
    assert [event["command"] for event in started] == ["sleep 0.1", "false", "sleep 0.05"]
    starts = [event["at"] for event in started]
    assert starts == sorted(starts) and len(set(starts)) == 3
    for previous_finish, next_start in zip(finished, started[1:]):
        assert previous_finish["at"] <= next_start["at"]


def test_parallel_group_runs_concurrently() -> None:
    items = [_item("sleep 0.4", file=f"f{index}.js") for index in range(4)]

    async def _run() -> tuple[TaskPool, float, list[bool]]:
        pool = TaskPool()
        started = time.monotonic()
        await pool.dispatch(items)
        completions: list[bool] = []
        while not pool.is_complete():
            completions.append(all(task.done for task in pool.tasks))
            await pool.pull_completed(0.05)
        return pool, time.monotonic() - started, completions

    pool, elapsed, completions = asyncio.run(_run())

    assert pool.outstanding == 0
    assert all(task.status is Status.DONE for task in pool.tasks)
    assert False in completions
    assert elapsed < 1.5


def test_pull_completed_without_units_returns_zero() -> None:
    assert asyncio.run(TaskPool().pull_completed(0)) == 0


def test_missing_command_aborts_whole_dispatch() -> None:
    items = [
        _item("true", group="lint"),
        _item("definitely-not-a-real-binary-4242 $FILE", group="other"),
    ]

    async def _run() -> TaskPool:
        pool = TaskPool()
        with pytest.raises(CommandNotFoundError) as excinfo:
            await pool.dispatch(items)
        assert excinfo.value.command == "definitely-not-a-real-binary-4242 $FILE"
        return pool

    pool = asyncio.run(_run())

    assert pool.is_empty() is True
    assert pool.tasks == []
    assert pool.outstanding == 0


def test_timeout_is_excluded_from_total_execution_time() -> None:
    items = [
        _item("sleep 5", file="slow.js", group="slow", timeout=0.1),
        _item("true", file="ok.js"),
        _item("false", file="bad.js"),
    ]

    async def _run() -> TaskPool:
        pool = TaskPool()
        await pool.dispatch(items)
        await pool.drain()
        return pool

    pool = asyncio.run(_run())

    by_file = {task.file: task for task in pool.tasks}
    assert by_file["slow.js"].status is Status.TIMEOUT
    assert by_file["slow.js"].done is True
    expected = by_file["ok.js"].duration + by_file["bad.js"].duration
    assert pool.total_execution_time() == pytest.approx(expected)
    assert pool.status_counts()[Status.TIMEOUT] == 1


def test_stats_ignore_unfinished_tasks() -> None:
    async def _run() -> tuple[dict[str, CommandStats], float, TaskPool]:
        pool = TaskPool()
        await pool.dispatch([_item("sleep 0.3", file="a.js"), _item("sleep 0.3", file="b.js")])
        await asyncio.sleep(0.05)
        mid_stats = pool.aggregate_stats()
        mid_total = pool.total_execution_time()
        await pool.drain()
        return mid_stats, mid_total, pool

    mid_stats, mid_total, pool = asyncio.run(_run())

    assert mid_stats == {"sleep 0.3": CommandStats(count=2, total_duration=0.0)}
    assert mid_total == 0.0
    final = pool.aggregate_stats()["sleep 0.3"]
    assert final.count == 2
    assert final.total_duration >= 0.5
    assert final.average == pytest.approx(final.total_duration / 2)


def test_read_accessors_are_idempotent() -> None:
    async def _run() -> TaskPool:
        pool = TaskPool()
        await pool.dispatch([_item("true"), _item("false", file="b.js")])
        await pool.drain()
        return pool

    pool = asyncio.run(_run())

    assert pool.display_lines() == pool.display_lines()
    assert pool.aggregate_stats() == pool.aggregate_stats()
    assert pool.total_execution_time() == pool.total_execution_time()
    lines = pool.display_lines()
    assert lines[0].symbol == "✓"
    assert lines[0].text.startswith("a.js: true - ")
    assert lines[1].symbol == "✗"
    assert lines[1].text.endswith("(exit code 1)")


def test_crashed_unit_is_surfaced_without_blocking_others(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_run = Task.run

    async def flaky_run(self: Task, timeout: float | None = None) -> Status:
        if self.file == "boom.js":
            raise ValueError("unit exploded")
        return await original_run(self, timeout)

    monkeypatch.setattr(Task, "run", flaky_run)

    async def _run() -> tuple[TaskPool, TaskJoinError]:
        pool = TaskPool()
        await pool.dispatch([_item("true", file="boom.js"), _item("sleep 0.1", file="ok.js")])
        with pytest.raises(TaskJoinError) as excinfo:
            await pool.drain()
        return pool, excinfo.value

    pool, error = asyncio.run(_run())

    assert pool.is_complete() is True
    assert [str(exc) for exc in error.errors] == ["unit exploded"]
    assert len(pool.join_errors) == 1
    by_file = {task.file: task for task in pool.tasks}
    assert by_file["ok.js"].status is Status.DONE


def test_shutdown_cancels_running_units() -> None:
    async def _run() -> TaskPool:
        pool = TaskPool()
        await pool.dispatch(
            [
                _item("sleep 5", file="a.js", group="ci", order=ExecutionOrder.SEQUENTIAL),
                _item("sleep 5", file="b.js", group="ci", order=ExecutionOrder.SEQUENTIAL),
            ]
        )
        await asyncio.sleep(0.1)
        await pool.shutdown()
        return pool

    started = time.monotonic()
    pool = asyncio.run(_run())

    assert time.monotonic() - started < 4
    assert pool.is_complete() is True
    first, second = pool.tasks
    assert first.status is Status.FAILED
    assert first.error == "cancelled"
    assert second.status is Status.WAITING


def test_timeout_in_sequential_group_lets_later_tasks_run() -> None:
    events: list[dict[str, Any]] = []
    items = [
        _item("sleep 5", file="x.go", group="ci", order=ExecutionOrder.SEQUENTIAL, timeout=0.1),
        _item("true", file="x.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
    ]

    async def _run() -> TaskPool:
        pool = TaskPool(event_hook=events.append)
        await pool.dispatch(items)
        await pool.drain()
        return pool

    pool = asyncio.run(_run())

    assert [task.status for task in pool.tasks] == [Status.TIMEOUT, Status.DONE]
    assert all(task.done for task in pool.tasks)
    [slow_finished] = [
        event
        for event in events
        if event["event"] == "task_finished" and event["command"] == "sleep 5"
    ]
    [next_started] = [
        event for event in events if event["event"] == "task_started" and event["command"] == "true"
    ]
    assert slow_finished["status"] == "timeout"
    assert slow_finished["at"] <= next_started["at"]


def test_raising_event_hook_does_not_strand_tasks() -> None:
    def hook(event: dict[str, Any]) -> None:
        if event["event"] == "task_started":
            raise RuntimeError("hook broke")

    async def _run() -> TaskPool:
        pool = TaskPool(event_hook=hook)
        await pool.dispatch(
            [
                _item("true", file="a.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
                _item("true", file="b.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
            ]
        )
        await pool.drain()
        return pool

    pool = asyncio.run(_run())

    assert pool.is_complete() is True
    assert [task.status for task in pool.tasks] == [Status.DONE, Status.DONE]
    assert all(task.done for task in pool.tasks)
    assert pool.join_errors == []


def test_crashed_link_does_not_abandon_sequential_group(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_run = Task.run

    async def flaky_run(self: Task, timeout: float | None = None) -> Status:
        if self.file == "boom.go":
            raise ValueError("link exploded")
        return await original_run(self, timeout)

    monkeypatch.setattr(Task, "run", flaky_run)

    async def _run() -> tuple[TaskPool, TaskJoinError]:
        pool = TaskPool()
        await pool.dispatch(
            [
                _item("true", file="boom.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
                _item("true", file="ok.go", group="ci", order=ExecutionOrder.SEQUENTIAL),
            ]
        )
        with pytest.raises(TaskJoinError) as excinfo:
            await pool.drain()
        return pool, excinfo.value

    pool, error = asyncio.run(_run())

    assert [str(exc) for exc in error.errors] == ["link exploded"]
    by_file = {task.file: task for task in pool.tasks}
    assert by_file["ok.go"].status is Status.DONE
    assert pool.is_complete() is True
