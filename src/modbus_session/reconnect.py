"""ReconnectSupervisor: bounded, observable reconnection attempts after a lost link."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class ReconnectSupervisor:
    """
    Repeatedly calls ``connect`` until it succeeds, the attempt cap is reached, or
    the run is stopped.

    Per attempt: increment the counter, call ``on_attempt(attempt, max_attempts)``,
    await ``connect()``. On success the counter resets to 0 and ``on_success()`` runs. On failure, if
    ``max_attempts > 0`` and the cap is reached, ``on_give_up()`` is called;
    otherwise wait ``interval`` seconds and retry. ``max_attempts == 0`` retries
    forever. At most one run is active at a time.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        interval: float,
        max_attempts: int = 0,
        *,
        on_attempt: Callable[[int, int], None] | None = None,
        on_success: Callable[[], None] | None = None,
        on_give_up: Callable[[], None] | None = None,
        name: str = "reconnect",
    ) -> None:
        self.interval = interval
        self.max_attempts = max_attempts
        self.name = name
        self.attempt = 0
        self._connect = connect
        self._on_attempt = on_attempt
        self._on_success = on_success
        self._on_give_up = on_give_up
        self._task: asyncio.Task | None = None
        self._stopped_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None

    def start(self) -> bool:
        """Begin a run; returns False (no-op) when one is already active."""
        if self._task is not None:
            return False
        self.attempt = 0
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return True

    def stop(self) -> None:
        task, self._task = self._task, None
        self.attempt = 0
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            self._stopped_task = task

    async def wait(self) -> None:
        """Wait for the active (or just stopped) run to finish."""
        task = self._task or self._stopped_task
        self._stopped_task = None
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _limit_text(self) -> str:
        return str(self.max_attempts) if self.max_attempts > 0 else "unbounded"

    async def _run(self) -> None:
        me = asyncio.current_task()
        try:
            while self._task is me:
                self.attempt += 1
                logger.info("%s: attempt %d/%s", self.name, self.attempt, self._limit_text())
                if self._on_attempt is not None:
                    self._on_attempt(self.attempt, self.max_attempts)
                try:
                    await self._connect()
                except Exception as e:
                    if self._task is not me:
                        # Stopped while the attempt was completing
                        return
                    logger.warning("%s: attempt %d failed: %s", self.name, self.attempt, e)
                    if self.max_attempts > 0 and self.attempt >= self.max_attempts:
                        logger.error("%s: giving up after %d attempt(s)", self.name, self.attempt)
                        self._task = None
                        if self._on_give_up is not None:
                            self._on_give_up()
                        return
                    await asyncio.sleep(self.interval)
                    continue
                if self._task is not me:
                    return
                logger.info("%s: reconnected after %d attempt(s)", self.name, self.attempt)
                self._task = None
                self.attempt = 0
                if self._on_success is not None:
                    self._on_success()
                return
        finally:
            if self._task is me:
                self._task = None
