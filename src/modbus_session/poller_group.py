"""
PollerGroup: many named periodic tasks sharing one session, executed serially.

One connection handles one request at a time, so the group never overlaps two
tasks' actions. Every base-interval tick it walks the enabled tasks in insertion
order and runs each one whose interval has elapsed, one after another.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator

from .events import maybe_await
from .poller import MIN_INTERVAL

if TYPE_CHECKING:
    from .session import ModbusSession

logger = logging.getLogger(__name__)

DEFAULT_BASE_INTERVAL = 0.1

TaskAction = Callable[[], Awaitable[Any]]
ErrorHandler = Callable[[str, BaseException], Any]


@dataclass
class PollTask:
    """A named periodic action inside a PollerGroup."""

    name: str
    interval: float
    action: TaskAction
    last_executed: float = field(default_factory=time.monotonic)
    enabled: bool = True
    run_count: int = 0
    error_count: int = 0

    def is_due(self, now: float) -> bool:
        return now - self.last_executed >= self.interval


class PollerGroup:
    """
    Serial scheduler for named poll tasks.

    Bound to a session, the group skips whole ticks while the session is not
    connected; when the connection comes (back) every task waits a full interval
    before its next run. Standalone groups (no session) treat the link as always up
    unless an ``is_connected`` callable is given.
    """

    def __init__(
        self,
        session: "ModbusSession | None" = None,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        *,
        is_connected: Callable[[], bool] | None = None,
        name: str | None = None,
    ) -> None:
        self._session = session
        if is_connected is None:
            is_connected = (lambda: session.is_connected) if session is not None else (lambda: True)
        self._is_connected = is_connected
        self.name = name or (f"{session.name}.group" if session is not None else "poller-group")
        self.base_interval = max(MIN_INTERVAL, float(base_interval))
        self._tasks: dict[str, PollTask] = {}
        self._error_handlers: list[ErrorHandler] = []
        self._gate = asyncio.Event()
        self._gate.set()
        self._loop_task: asyncio.Task | None = None
        self._running = False
        self._paused = False
        self._disposed = False

    # Task registration

    def add(self, name: str, interval: float, action: TaskAction) -> "PollerGroup":
        """
        Add (or replace) a task. ``action`` is a zero-argument coroutine function.
        A replaced task keeps its insertion position.
        """
        if not name or not name.strip():
            raise ValueError("Task name cannot be empty")
        self._tasks[name] = PollTask(name=name, interval=max(MIN_INTERVAL, float(interval)), action=action)
        return self

    def _require_session(self) -> "ModbusSession":
        if self._session is None:
            raise RuntimeError(f"Group {self.name!r} is not bound to a session")
        return self._session

    def add_holding_registers(
        self,
        name: str,
        address: int,
        count: int,
        interval: float,
        on_data: Callable[[dict[int, int]], Any],
    ) -> "PollerGroup":
        session = self._require_session()

        async def _read() -> None:
            values = await session.read_holding_registers(address, count)
            await maybe_await(on_data({address + i: v for i, v in enumerate(values)}))

        return self.add(name, interval, _read)

    def add_holding_register(
        self,
        name: str,
        address: int,
        interval: float,
        on_data: Callable[[int], Any],
    ) -> "PollerGroup":
        session = self._require_session()

        async def _read() -> None:
            values = await session.read_holding_registers(address, 1)
            await maybe_await(on_data(values[0]))

        return self.add(name, interval, _read)

    def add_input_registers(
        self,
        name: str,
        address: int,
        count: int,
        interval: float,
        on_data: Callable[[dict[int, int]], Any],
    ) -> "PollerGroup":
        session = self._require_session()

        async def _read() -> None:
            values = await session.read_input_registers(address, count)
            await maybe_await(on_data({address + i: v for i, v in enumerate(values)}))

        return self.add(name, interval, _read)

    def add_coils(
        self,
        name: str,
        address: int,
        count: int,
        interval: float,
        on_data: Callable[[dict[int, bool]], Any],
    ) -> "PollerGroup":
        session = self._require_session()

        async def _read() -> None:
            values = await session.read_coils(address, count)
            await maybe_await(on_data({address + i: v for i, v in enumerate(values)}))

        return self.add(name, interval, _read)

    def add_discrete_inputs(
        self,
        name: str,
        address: int,
        count: int,
        interval: float,
        on_data: Callable[[dict[int, bool]], Any],
    ) -> "PollerGroup":
        session = self._require_session()

        async def _read() -> None:
            values = await session.read_discrete_inputs(address, count)
            await maybe_await(on_data({address + i: v for i, v in enumerate(values)}))

        return self.add(name, interval, _read)

    # Configuration

    def on_error(self, handler: ErrorHandler) -> "PollerGroup":
        """Register a handler called as handler(task_name, exc) when a task fails."""
        self._error_handlers.append(handler)
        return self

    def with_base_interval(self, interval: float) -> "PollerGroup":
        self.base_interval = max(MIN_INTERVAL, float(interval))
        return self

    # Introspection

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[PollTask]:
        return iter(list(self._tasks.values()))

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def get(self, name: str) -> PollTask | None:
        return self._tasks.get(name)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def is_task_paused(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.enabled

    # Control

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError(f"Group {self.name!r} has been disposed")
        if self._running:
            return
        self._running = True
        self._paused = False
        self._gate.set()
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Group %s started with %d task(s)", self.name, len(self._tasks))

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._paused = False
        self._gate.set()
        task = self._loop_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Group %s stopped", self.name)

    def pause_all(self) -> None:
        if not self._running or self._paused:
            return
        self._paused = True
        self._gate.clear()

    def resume_all(self) -> None:
        if not self._running or not self._paused:
            return
        self._paused = False
        self._gate.set()

    def pause(self, name: str) -> bool:
        """Disable one task; others keep running. Returns False for unknown names."""
        task = self._tasks.get(name)
        if task is None:
            return False
        task.enabled = False
        return True

    def resume(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None:
            return False
        task.enabled = True
        return True

    def remove(self, name: str) -> bool:
        """Delete a task; safe to call at any time, including from an error handler."""
        return self._tasks.pop(name, None) is not None

    async def wait_stopped(self) -> None:
        task = self._loop_task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Scheduling loop

    def _owns_loop(self, task: asyncio.Task | None) -> bool:
        return self._running and self._loop_task is task

    def _restart_intervals(self, now: float) -> None:
        for task in self._tasks.values():
            task.last_executed = now

    async def _run(self) -> None:
        me = asyncio.current_task()
        was_connected = False
        while self._owns_loop(me):
            await self._gate.wait()
            if not self._owns_loop(me):
                break
            if not self._is_connected():
                if was_connected:
                    logger.debug("Group %s: link down, skipping ticks", self.name)
                was_connected = False
            else:
                if not was_connected:
                    # No catch-up: every task waits a full interval from (re)connect
                    self._restart_intervals(time.monotonic())
                    was_connected = True
                await self._run_due(me)
            if not self._owns_loop(me):
                break
            await asyncio.sleep(self.base_interval)

    async def _run_due(self, me: asyncio.Task | None) -> None:
        now = time.monotonic()
        for task in list(self._tasks.values()):
            if not self._owns_loop(me):
                return
            # Removed or replaced by an earlier task's error handler
            if self._tasks.get(task.name) is not task:
                continue
            if not task.enabled or not task.is_due(now):
                continue
            try:
                await task.action()
                task.run_count += 1
            except Exception as e:
                task.error_count += 1
                logger.warning("Group %s: task %s failed: %s", self.name, task.name, e)
                await self._report(task.name, e)
            finally:
                task.last_executed = time.monotonic()

    async def _report(self, name: str, exc: BaseException) -> None:
        for handler in list(self._error_handlers):
            try:
                await maybe_await(handler(name, exc))
            except Exception:
                logger.warning("Group %s: error handler failed for task %s", self.name, name, exc_info=True)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.stop()
        self._tasks.clear()
        self._error_handlers.clear()
