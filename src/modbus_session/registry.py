"""SessionRegistry: explicit owner of named sessions, sharing defaults and a transport factory."""

import logging
from typing import Callable, Iterator

from .config import SessionOptions
from .errors import ConfigError, DuplicateSessionError
from .session import ModbusSession
from .transport import TransportFactory

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Creates sessions by unique name and disposes them on removal or close().

    ``defaults`` sit underneath every session's own options; any field the session
    leaves unset (None) is taken from them.
    """

    def __init__(
        self,
        defaults: SessionOptions | None = None,
        transport: TransportFactory | None = None,
    ) -> None:
        self.defaults = defaults or SessionOptions()
        self._transport = transport
        self._sessions: dict[str, ModbusSession] = {}
        self._closed = False

    def create(
        self,
        name: str,
        options: SessionOptions | None = None,
        *,
        configure: Callable[[SessionOptions], SessionOptions] | None = None,
    ) -> ModbusSession:
        """
        Create and register a session. ``configure`` receives the merged options
        and returns the final ones (e.g. ``lambda o: o.with_reconnect(1.0, 5)``).
        """
        if self._closed:
            raise RuntimeError("Registry is closed")
        if not name or not name.strip():
            raise ConfigError("name", "Session name cannot be empty")
        if name in self._sessions:
            raise DuplicateSessionError(name)
        merged = self.defaults.merge_with(options)
        if configure is not None:
            merged = configure(merged)
        session = ModbusSession(name, merged, transport=self._transport)
        self._sessions[name] = session
        logger.debug("Registered session %s -> %s", name, session.address)
        return session

    def get(self, name: str) -> ModbusSession | None:
        return self._sessions.get(name)

    def __getitem__(self, name: str) -> ModbusSession:
        return self._sessions[name]

    def __contains__(self, name: object) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[ModbusSession]:
        return iter(list(self._sessions.values()))

    def names(self) -> list[str]:
        return list(self._sessions)

    def sessions(self) -> list[ModbusSession]:
        return list(self._sessions.values())

    def remove(self, name: str) -> bool:
        """Dispose and forget a session; False when the name is unknown."""
        session = self._sessions.pop(name, None)
        if session is None:
            return False
        session.dispose()
        return True

    def close(self) -> None:
        """Dispose every session. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for session in list(self._sessions.values()):
            session.dispose()
        self._sessions.clear()

    def __enter__(self) -> "SessionRegistry":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
