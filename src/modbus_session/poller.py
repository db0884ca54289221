"""Poller: run one async action on a fixed interval with pause/resume and graceful stop."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .events import Signal, maybe_await

if TYPE_CHECKING:
    from .session import ModbusSession

logger = logging.getLogger(__name__)

# Intervals are clamped to this floor (seconds) so a loop can never spin
MIN_INTERVAL = 0.01

PollAction = Callable[[], Awaitable[Any]]
ErrorCallback = Callable[[BaseException], Any]


class Poller:
    """
    Periodic runner for a single action.

    States: stopped, running, running-but-paused. The loop waits on a pause gate,
    runs the action, then sleeps the interval. Exceptions raised by the action are
    reported through the ``error`` signal and do not stop the loop.
    """

    def __init__(self, action: PollAction, interval: float, name: str = "poller") -> None:
        if action is None:
            raise TypeError("action is required")
        self.name = name
        self.interval = max(MIN_INTERVAL, float(interval))
        self.error = Signal(f"{name}.error")
        self._action = action
        self._gate = asyncio.Event()
        self._gate.set()
        self._task: asyncio.Task | None = None
        self._running = False
        self._paused = False
        self._disposed = False

    @property
    def is_running(self) -> bool:
        """True while started, including while paused."""
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError(f"Poller {self.name!r} has been disposed")
        if self._running:
            return
        self._running = True
        self._paused = False
        self._gate.set()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Poller %s started (interval %.3fs)", self.name, self.interval)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._paused = False
        # Open the gate so a paused loop can observe the stop
        self._gate.set()
        task = self._task
        # A loop stopping itself from inside its action exits at the next check
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Poller %s stopped", self.name)

    def pause(self) -> None:
        if not self._running or self._paused:
            return
        self._paused = True
        self._gate.clear()

    def resume(self) -> None:
        if not self._running or not self._paused:
            return
        self._paused = False
        self._gate.set()

    async def wait_stopped(self) -> None:
        """Wait until the loop task has actually finished after stop()."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _owns_loop(self, task: asyncio.Task | None) -> bool:
        return self._running and self._task is task

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._owns_loop(me):
            await self._gate.wait()
            if not self._owns_loop(me):
                break
            try:
                await self._action()
            except Exception as e:
                logger.warning("Poller %s action failed: %s", self.name, e)
                self.error.emit(e)
            if not self._owns_loop(me):
                break
            await asyncio.sleep(self.interval)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.stop()
        self.error.clear()


def _register_map(start: int, values: list[Any]) -> dict[int, Any]:
    return {start + i: v for i, v in enumerate(values)}


def holding_register_poller(
    session: "ModbusSession",
    address: int,
    count: int,
    interval: float,
    on_data: Callable[[dict[int, int]], Any],
    on_error: ErrorCallback | None = None,
) -> Poller:
    """Poller reading holding registers into {address: value} each cycle."""

    async def _poll() -> None:
        if not session.is_connected:
            return
        values = await session.read_holding_registers(address, count)
        await maybe_await(on_data(_register_map(address, values)))

    poller = Poller(_poll, interval, name=f"{session.name}.holding[{address}:{count}]")
    if on_error is not None:
        poller.error.connect(on_error)
    return poller


def coil_poller(
    session: "ModbusSession",
    address: int,
    count: int,
    interval: float,
    on_data: Callable[[dict[int, bool]], Any],
    on_error: ErrorCallback | None = None,
) -> Poller:
    """Poller reading coils into {address: state} each cycle."""

    async def _poll() -> None:
        if not session.is_connected:
            return
        values = await session.read_coils(address, count)
        await maybe_await(on_data(_register_map(address, values)))

    poller = Poller(_poll, interval, name=f"{session.name}.coils[{address}:{count}]")
    if on_error is not None:
        poller.error.connect(on_error)
    return poller
