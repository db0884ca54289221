"""pymodbus-session: managed Modbus TCP client sessions with reconnection, heartbeat and polling, plus a TCP slave."""

__version__ = "0.1.0"

from .codec import decode, encode
from .config import DEFAULTS, ResolvedOptions, SessionOptions
from .errors import (
    CommunicationError,
    ConfigError,
    DuplicateSessionError,
    ModbusConnectionError,
    ModbusSessionError,
    NotConnectedError,
    ProtocolError,
    SessionDisposedError,
)
from .events import Signal
from .poller import Poller, coil_poller, holding_register_poller
from .poller_group import PollerGroup, PollTask
from .registry import SessionRegistry
from .session import ModbusSession
from .slave import ModbusSlave, SlaveOptions
from .transport import PymodbusTransport, RequestExecutor, TransportFactory
from .types import ConnectionState, DataType, ModbusTable, WordOrder

__all__ = [
    "__version__",
    "decode",
    "encode",
    "DEFAULTS",
    "ResolvedOptions",
    "SessionOptions",
    "CommunicationError",
    "ConfigError",
    "DuplicateSessionError",
    "ModbusConnectionError",
    "ModbusSessionError",
    "NotConnectedError",
    "ProtocolError",
    "SessionDisposedError",
    "Signal",
    "Poller",
    "coil_poller",
    "holding_register_poller",
    "PollerGroup",
    "PollTask",
    "SessionRegistry",
    "ModbusSession",
    "ModbusSlave",
    "SlaveOptions",
    "PymodbusTransport",
    "RequestExecutor",
    "TransportFactory",
    "ConnectionState",
    "DataType",
    "ModbusTable",
    "WordOrder",
]
