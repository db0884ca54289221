"""Signal: multi-subscriber notifications for sessions and pollers."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class Signal:
    """
    Broadcast to zero or more subscribers, fire-and-continue.

    Plain callables run inline. Callables returning an awaitable are scheduled as
    tasks on the running loop, so a slow subscriber never holds up emit().
    Subscriber failures are logged and never reach the emitter.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callback] = []
        self._pending: set[asyncio.Task] = set()

    def connect(self, callback: Callback) -> Callable[[], None]:
        """Subscribe callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.disconnect(callback)

        return _unsubscribe

    def disconnect(self, callback: Callback) -> bool:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)

    def emit(self, *args: Any) -> None:
        # Copy: subscribers may unsubscribe themselves while being notified
        for callback in list(self._subscribers):
            try:
                result = callback(*args)
            except Exception:
                logger.warning("Subscriber of %s failed", self.name, exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: nothing can drive the coroutine
            logger.warning("Async subscriber of %s dropped: no running event loop", self.name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async subscriber of %s failed", self.name, exc_info=exc)

    async def drain(self) -> None:
        """Wait for scheduled async subscribers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def maybe_await(result: Any) -> Any:
    """Await result if it is awaitable; lets callbacks be plain or async functions."""
    if inspect.isawaitable(result):
        return await result
    return result
