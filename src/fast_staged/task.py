from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

from fast_staged.config import format_duration
from fast_staged.dispatcher import WorkItem

logger = logging.getLogger(__name__)

T = TypeVar("T")
TaskEventHook = Callable[[dict[str, Any]], None]


class Status(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({Status.DONE, Status.FAILED, Status.TIMEOUT})
STATUS_SYMBOLS = {
    Status.DONE: "✓",
    Status.FAILED: "✗",
    Status.RUNNING: "⟳",
    Status.WAITING: "⏳",
    Status.TIMEOUT: "⏱",
}


class GuardedCell(Generic[T]):
    """A single value behind its own lock."""

    __slots__ = ("_lock", "_value")

    def __init__(self, value: T) -> None:
        self._lock = threading.Lock()
        self._value = value

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value


def command_exists(command: str) -> bool:
    """Check that the executable a command line starts with can be found."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        return False
    if not tokens:
        return False

    executable = tokens[0]
    if os.sep in executable or (os.altsep and os.altsep in executable):
        path = Path(executable)
        return path.is_file() and os.access(path, os.X_OK)
    return shutil.which(executable) is not None


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


class Task:
    """Execution record for one command bound to one file.

    ``status``, ``started_at``, ``duration``, ``error``, ``output`` and ``done``
    are each kept in their own guarded cell. Only the coroutine running the
    task writes them; any thread may read them at any time.
    """

    def __init__(
        self,
        file: str,
        command: str,
        group: str | None = None,
        timeout: float | None = None,
        *,
        cwd: Path | None = None,
        event_hook: TaskEventHook | None = None,
    ) -> None:
        self.file = file
        self.command = command
        self.group = group
        self.timeout = timeout
        self.cwd = cwd
        self.event_hook = event_hook
        self._status: GuardedCell[Status] = GuardedCell(Status.WAITING)
        self._started_at: GuardedCell[float | None] = GuardedCell(None)
        self._duration: GuardedCell[float | None] = GuardedCell(None)
        self._error: GuardedCell[str | None] = GuardedCell(None)
        self._output: GuardedCell[str | None] = GuardedCell(None)
        self._done: GuardedCell[bool] = GuardedCell(False)

    @classmethod
    def from_work_item(
        cls,
        item: WorkItem,
        *,
        cwd: Path | None = None,
        event_hook: TaskEventHook | None = None,
    ) -> Task:
        return cls(
            file=item.file,
            command=item.command,
            group=item.group,
            timeout=item.timeout,
            cwd=cwd,
            event_hook=event_hook,
        )

    def __repr__(self) -> str:
        return f"Task(file={self.file!r}, command={self.command!r}, status={self.status.value})"

    @property
    def status(self) -> Status:
        return self._status.get()

    @property
    def started_at(self) -> float | None:
        return self._started_at.get()

    @property
    def duration(self) -> float | None:
        return self._duration.get()

    @property
    def error(self) -> str | None:
        return self._error.get()

    @property
    def output(self) -> str | None:
        return self._output.get()

    @property
    def done(self) -> bool:
        return self._done.get()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is None:
            return
        try:
            self.event_hook(payload)
        except Exception:
            logger.exception("event hook failed for %s event=%s", self.file, payload.get("event"))

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["FILE"] = self.file
        return env

    async def run(self, timeout: float | None = None) -> Status:
        """Run the command once and record its terminal status."""
        if self.status is not Status.WAITING:
            raise RuntimeError(f"{self!r} has already been started")

        started = time.monotonic()
        self._status.set(Status.RUNNING)
        self._started_at.set(started)
        self._emit(
            {
                "event": "task_started",
                "file": self.file,
                "command": self.command,
                "group": self.group,
                "at": started,
            }
        )
        logger.debug("starting %r for %s", self.command, self.file)

        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as exc:
            logger.warning("could not start %r: %s", self.command, exc)
            return self._finish(Status.FAILED, error=str(exc))
        except asyncio.CancelledError:
            self._finish(Status.FAILED, error="cancelled")
            raise

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            await self._reap(process)
            return self._finish(
                Status.TIMEOUT, error=f"timed out after {format_duration(timeout or 0.0)}"
            )
        except asyncio.CancelledError:
            await self._reap(process)
            self._finish(Status.FAILED, error="cancelled")
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if process.returncode == 0:
            return self._finish(Status.DONE, output=output)
        return self._finish(
            Status.FAILED, error=f"exit code {process.returncode}", output=output
        )

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        _kill_process_group(process)
        await process.wait()

    def _finish(
        self, status: Status, *, error: str | None = None, output: str | None = None
    ) -> Status:
        # status, then duration, then done: done=True implies duration is set.
        started = self._started_at.get()
        elapsed = time.monotonic() - started if started is not None else 0.0
        if error is not None:
            self._error.set(error)
        if output is not None:
            self._output.set(output)
        self._status.set(status)
        self._duration.set(elapsed)
        self._started_at.set(None)
        self._done.set(True)

        self._emit(
            {
                "event": "task_finished",
                "file": self.file,
                "command": self.command,
                "group": self.group,
                "status": status.value,
                "duration": elapsed,
                "error": error,
                "at": time.monotonic(),
            }
        )
        logger.debug(
            "%r for %s finished: %s in %.3fs", self.command, self.file, status.value, elapsed
        )
        return status
