"""HeartbeatMonitor: periodic liveness check of a connected transport."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """
    Every ``interval`` seconds: emit a beat, then check the link. A failed check
    stops the monitor and calls ``on_failure`` once.

    The check reads the stream state and sends no Modbus request, so it never
    competes with application traffic for the connection.
    """

    def __init__(
        self,
        interval: float,
        check: Callable[[], bool],
        on_failure: Callable[[], None],
        on_beat: Callable[[], None] | None = None,
        name: str = "heartbeat",
    ) -> None:
        self.interval = interval
        self.name = name
        self._check = check
        self._on_failure = on_failure
        self._on_beat = on_beat
        self._task: asyncio.Task | None = None
        self.beats = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("%s started (interval %.3fs)", self.name, self.interval)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _alive(self) -> bool:
        try:
            return bool(self._check())
        except Exception as e:
            logger.warning("%s check raised: %s", self.name, e)
            return False

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                return
            self.beats += 1
            if self._on_beat is not None:
                try:
                    self._on_beat()
                except Exception:
                    logger.warning("%s beat callback failed", self.name, exc_info=True)
            if not self._alive():
                logger.warning("%s: connection lost", self.name)
                self._task = None
                self._on_failure()
                return
