"""SessionOptions: optional per-session settings, merging over defaults, and validation."""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from .errors import ConfigError
from .types import WordOrder

ENV_PREFIX = "MODBUS_SESSION_"


@dataclass(frozen=True)
class SessionOptions:
    """
    Settings for one client session. Every field is optional: None means "unset"
    and is filled from the layer below when merged, so an explicit 0 or False is
    never mistaken for a missing value.

    Durations are in seconds.
    """

    host: str | None = None
    port: int | None = None
    unit_id: int | None = None
    connect_timeout: float | None = None
    read_timeout: float | None = None
    write_timeout: float | None = None
    auto_reconnect: bool | None = None
    reconnect_interval: float | None = None
    max_reconnect_attempts: int | None = None
    enable_heartbeat: bool | None = None
    heartbeat_interval: float | None = None
    word_order: WordOrder | None = None

    def merge_with(self, overrides: "SessionOptions | None") -> "SessionOptions":
        """Return a copy where every non-None field of overrides wins."""
        if overrides is None:
            return self
        changes = {
            f.name: getattr(overrides, f.name)
            for f in fields(overrides)
            if getattr(overrides, f.name) is not None
        }
        return replace(self, **changes)

    def resolved(self) -> "ResolvedOptions":
        """Fill unset fields from DEFAULTS and validate the result."""
        merged = DEFAULTS.merge_with(self)
        values = {f.name: getattr(merged, f.name) for f in fields(merged)}
        return ResolvedOptions(**values)

    # Fluent helpers; each returns a new SessionOptions

    def with_endpoint(self, host: str, port: int | None = None) -> "SessionOptions":
        return replace(self, host=host, port=port if port is not None else self.port)

    def with_unit_id(self, unit_id: int) -> "SessionOptions":
        return replace(self, unit_id=unit_id)

    def with_timeouts(
        self,
        *,
        connect: float | None = None,
        read: float | None = None,
        write: float | None = None,
    ) -> "SessionOptions":
        return self.merge_with(
            SessionOptions(connect_timeout=connect, read_timeout=read, write_timeout=write)
        )

    def with_reconnect(
        self,
        interval: float | None = None,
        max_attempts: int | None = None,
        *,
        enabled: bool = True,
    ) -> "SessionOptions":
        return self.merge_with(
            SessionOptions(
                auto_reconnect=enabled,
                reconnect_interval=interval,
                max_reconnect_attempts=max_attempts,
            )
        )

    def with_heartbeat(self, interval: float | None = None, *, enabled: bool = True) -> "SessionOptions":
        return self.merge_with(SessionOptions(enable_heartbeat=enabled, heartbeat_interval=interval))

    def with_word_order(self, order: WordOrder | str) -> "SessionOptions":
        return replace(self, word_order=WordOrder(order))

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, environ: Mapping[str, str] | None = None) -> "SessionOptions":
        """
        Read options from environment variables named prefix + FIELD (e.g.
        MODBUS_SESSION_HOST, MODBUS_SESSION_READ_TIMEOUT). Unset variables stay None.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(prefix + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_env_value(f.name, raw.strip())
        return cls(**values)


_INT_FIELDS = frozenset({"port", "unit_id", "max_reconnect_attempts"})
_FLOAT_FIELDS = frozenset(
    {"connect_timeout", "read_timeout", "write_timeout", "reconnect_interval", "heartbeat_interval"}
)
_BOOL_FIELDS = frozenset({"auto_reconnect", "enable_heartbeat"})


def _parse_env_value(name: str, raw: str) -> Any:
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
        if name in _BOOL_FIELDS:
            v = raw.lower()
            if v in ("true", "1", "on", "yes"):
                return True
            if v in ("false", "0", "off", "no"):
                return False
            raise ValueError(raw)
        if name == "word_order":
            return WordOrder(raw.upper())
    except ValueError:
        raise ConfigError(name, f"Invalid value for {name}: {raw!r}") from None
    return raw


DEFAULTS = SessionOptions(
    port=502,
    unit_id=1,
    connect_timeout=3.0,
    read_timeout=3.0,
    write_timeout=3.0,
    auto_reconnect=False,
    reconnect_interval=5.0,
    max_reconnect_attempts=0,
    enable_heartbeat=False,
    heartbeat_interval=5.0,
    word_order=WordOrder.ABCD,
)


@dataclass(frozen=True)
class ResolvedOptions:
    """Fully populated, validated options as used by a running session."""

    host: str
    port: int
    unit_id: int
    connect_timeout: float
    read_timeout: float
    write_timeout: float
    auto_reconnect: bool
    reconnect_interval: float
    max_reconnect_attempts: int
    enable_heartbeat: bool
    heartbeat_interval: float
    word_order: WordOrder

    def __post_init__(self) -> None:
        if not self.host or not str(self.host).strip():
            raise ConfigError("host", "host is required")
        if not 1 <= self.port <= 65535:
            raise ConfigError("port", f"port must be 1..65535, got {self.port}")
        if not 0 <= self.unit_id <= 255:
            raise ConfigError("unit_id", f"unit_id must be 0..255, got {self.unit_id}")
        for name in ("connect_timeout", "read_timeout", "write_timeout", "reconnect_interval", "heartbeat_interval"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigError(name, f"{name} must be > 0, got {value}")
        if self.max_reconnect_attempts < 0:
            raise ConfigError(
                "max_reconnect_attempts",
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}",
            )
        if not isinstance(self.word_order, WordOrder):
            object.__setattr__(self, "word_order", WordOrder(self.word_order))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"
