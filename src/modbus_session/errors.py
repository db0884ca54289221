"""Exceptions for pymodbus-session: connection state, I/O and device errors."""


class ModbusSessionError(Exception):
    """Base exception for pymodbus-session."""

    pass


class ConfigError(ModbusSessionError, ValueError):
    """Raised when session options are missing or out of range."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        self._msg = message or f"Invalid value for {field!r}"
        super().__init__(self._msg)


class DuplicateSessionError(ModbusSessionError):
    """Raised when a registry already holds a session with the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Session {name!r} already exists")


class SessionDisposedError(ModbusSessionError):
    """Raised when an operation is attempted on a disposed session."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Session {name!r} has been disposed")


class NotConnectedError(ModbusSessionError):
    """Raised when a register operation is attempted while the session is not connected."""

    def __init__(self, operation: str, state: str | None = None) -> None:
        self.operation = operation
        self.state = state
        suffix = f" (state: {state})" if state else ""
        super().__init__(f"{operation}: not connected{suffix}")


class ModbusConnectionError(ModbusSessionError, ConnectionError):
    """Raised when the transport to the remote device cannot be established."""

    def __init__(
        self,
        message: str,
        *,
        address: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.address = address
        self.cause = cause
        super().__init__(message)


class CommunicationError(ModbusSessionError):
    """Raised when an in-flight request fails at the I/O level (timeout, reset, short reply)."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        address: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.address = address
        self.cause = cause
        super().__init__(message)


class ProtocolError(ModbusSessionError):
    """Raised when the device answers with a Modbus exception response (e.g. illegal address)."""

    def __init__(
        self,
        message: str,
        *,
        exception_code: int | None = None,
        operation: str | None = None,
        address: int | None = None,
    ) -> None:
        self.exception_code = exception_code
        self.operation = operation
        self.address = address
        super().__init__(message)
