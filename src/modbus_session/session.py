"""
ModbusSession: one managed client connection with a connection state machine.

    DISCONNECTED --connect()--> CONNECTING --ok--> CONNECTED
    CONNECTING --failure--> DISCONNECTED
    CONNECTED --disconnect() / link lost, no auto-reconnect--> DISCONNECTED
    CONNECTED --link lost, auto-reconnect--> RECONNECTING
    RECONNECTING --attempt ok--> CONNECTED
    RECONNECTING --attempts exhausted / stop_reconnect()--> DISCONNECTED

Entering CONNECTED starts the heartbeat monitor and any auto-started poller or
poller group; leaving it stops them. The transport handle is created and torn
down only by these transitions.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Sequence

from .config import ResolvedOptions, SessionOptions
from .errors import (
    CommunicationError,
    ConfigError,
    ModbusConnectionError,
    NotConnectedError,
    SessionDisposedError,
)
from .events import Signal, maybe_await
from .heartbeat import HeartbeatMonitor
from .poller import ErrorCallback, Poller
from .poller_group import PollerGroup
from .reconnect import ReconnectSupervisor
from .transport import PymodbusTransport, RequestExecutor, TransportFactory
from .types import ConnectionState, WordOrder

logger = logging.getLogger(__name__)

# Modbus application protocol limits per request
MAX_READ_BITS = 2000
MAX_READ_REGISTERS = 125
MAX_WRITE_BITS = 1968
MAX_WRITE_REGISTERS = 123


def _check_address(address: int) -> None:
    if not 0 <= address <= 0xFFFF:
        raise ValueError(f"Address out of range 0..65535: {address}")


def _check_count(count: int, limit: int) -> None:
    if not 1 <= count <= limit:
        raise ValueError(f"Count must be 1..{limit}, got {count}")


def _check_register(value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"Register value out of range 0..65535: {value}")


class ModbusSession:
    """
    Managed Modbus TCP client session.

    Raw register operations are forwarded to the protocol collaborator while
    CONNECTED and fail with NotConnectedError otherwise, without touching the
    transport. I/O failures tear the link down (reconnecting when enabled) and are
    then re-raised to the caller as CommunicationError.

    Signals: ``state_changed(state)``, ``reconnecting(attempt, max_attempts)``,
    ``reconnect_failed()``, ``heartbeat()``.
    """

    def __init__(
        self,
        name: str,
        options: SessionOptions | ResolvedOptions,
        transport: TransportFactory | None = None,
    ) -> None:
        if not name or not name.strip():
            raise ConfigError("name", "Session name cannot be empty")
        self.session_id = uuid.uuid4().hex[:8]
        self.name = name
        self._options = options.resolved() if isinstance(options, SessionOptions) else options
        self._transport = transport if transport is not None else PymodbusTransport()
        self._executor: RequestExecutor | None = None
        self._state = ConnectionState.DISCONNECTED
        self._disposed = False
        self._connect_lock = asyncio.Lock()
        self._io_lock = asyncio.Lock()
        # Bumped by disconnect()/dispose() so an in-flight connect() cannot complete
        self._generation = 0
        self._pending_connect: asyncio.Future | None = None

        self.state_changed = Signal(f"{name}.state_changed")
        self.reconnecting = Signal(f"{name}.reconnecting")
        self.reconnect_failed = Signal(f"{name}.reconnect_failed")
        self.heartbeat = Signal(f"{name}.heartbeat")

        self._heartbeat_monitor = HeartbeatMonitor(
            self._options.heartbeat_interval,
            check=self._check_alive,
            on_failure=self._on_heartbeat_failure,
            on_beat=self.heartbeat.emit,
            name=f"{name}.heartbeat",
        )
        self._reconnector = ReconnectSupervisor(
            self._reopen,
            self._options.reconnect_interval,
            self._options.max_reconnect_attempts,
            on_attempt=self.reconnecting.emit,
            on_success=self._on_reconnected,
            on_give_up=self._on_reconnect_give_up,
            name=f"{name}.reconnect",
        )

        self.poller: Poller | None = None
        self.poller_group: PollerGroup | None = None
        self._auto_start_poller = False
        self._auto_start_group = False

    def __repr__(self) -> str:
        return f"<ModbusSession {self.name!r} id={self.session_id} {self.address} {self._state.value}>"

    # Identity and configuration

    @property
    def options(self) -> ResolvedOptions:
        return self._options

    @property
    def address(self) -> str:
        return self._options.address

    @property
    def unit_id(self) -> int:
        return self._options.unit_id

    @property
    def word_order(self) -> WordOrder:
        return self._options.word_order

    def configure(self, overrides: SessionOptions) -> "ModbusSession":
        """
        Merge overrides into the current options. Endpoint and timeout changes
        take effect on the next connect; reconnect and heartbeat settings on the
        next run of those loops.
        """
        current = SessionOptions(**asdict(self._options))
        self._options = current.merge_with(overrides).resolved()
        self._reconnector.interval = self._options.reconnect_interval
        self._reconnector.max_attempts = self._options.max_reconnect_attempts
        self._heartbeat_monitor.interval = self._options.heartbeat_interval
        return self

    # State machine

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnector.attempt

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info("[%s] state %s -> %s", self.name, previous.value, state.value)
        if previous == ConnectionState.CONNECTED:
            self._on_leave_connected()
        if state == ConnectionState.CONNECTED:
            self._on_enter_connected()
        self.state_changed.emit(state)

    def _on_enter_connected(self) -> None:
        if self._options.enable_heartbeat:
            self._heartbeat_monitor.start()
        if self.poller is not None and self._auto_start_poller:
            self.poller.start()
        if self.poller_group is not None and self._auto_start_group:
            self.poller_group.start()

    def _on_leave_connected(self) -> None:
        self._heartbeat_monitor.stop()
        if self.poller is not None and self._auto_start_poller:
            self.poller.stop()
        if self.poller_group is not None and self._auto_start_group:
            self.poller_group.stop()

    def _check_disposed(self) -> None:
        if self._disposed:
            raise SessionDisposedError(self.name)

    async def _open(self) -> RequestExecutor:
        """
        Open the transport and return its executor.

        The open runs in its own task so that an executor which arrives after this
        call was cancelled (or timed out) is closed instead of leaked.
        """
        opts = self._options
        opening = asyncio.ensure_future(self._transport.open(opts.host, opts.port, opts.connect_timeout))
        try:
            return await asyncio.wait_for(asyncio.shield(opening), opts.connect_timeout)
        except ModbusConnectionError:
            raise
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            opening.cancel()
            opening.add_done_callback(self._discard_opened)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise ModbusConnectionError(
                f"Connect to {opts.address} timed out after {opts.connect_timeout}s",
                address=opts.address,
                cause=e,
            ) from e
        except OSError as e:
            raise ModbusConnectionError(f"Connect to {opts.address} failed: {e}", address=opts.address, cause=e) from e

    def _discard_opened(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.debug("[%s] closing transport opened after the attempt was abandoned", self.name)
        self._close_executor(opening.result())

    async def _reopen(self) -> None:
        executor = await self._open()
        if self._state != ConnectionState.RECONNECTING or not self._reconnector.is_running:
            self._close_executor(executor)
            raise ModbusConnectionError(f"Reconnect to {self.address} abandoned", address=self.address)
        self._executor = executor

    def _close_executor(self, executor: RequestExecutor) -> None:
        try:
            executor.close()
        except Exception as e:
            logger.warning("[%s] error closing transport: %s", self.name, e)

    def _teardown(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            self._close_executor(executor)

    def _abort_pending_connect(self) -> None:
        self._generation += 1
        pending, self._pending_connect = self._pending_connect, None
        if pending is not None:
            pending.cancel()

    async def connect(self) -> None:
        """
        Connect to the remote device. No-op when already connected. Raises
        ModbusConnectionError when the transport cannot be established, or when
        disconnect() or dispose() is called before it is; the session is then
        DISCONNECTED.
        """
        self._check_disposed()
        async with self._connect_lock:
            if self._state == ConnectionState.CONNECTED:
                logger.debug("[%s] already connected", self.name)
                return
            if self._reconnector.is_running:
                self._reconnector.stop()
                await self._reconnector.wait()
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)
            attempt = asyncio.ensure_future(self._open())
            self._pending_connect = attempt
            try:
                executor = await attempt
            except asyncio.CancelledError:
                if generation == self._generation:
                    # The caller was cancelled, not the attempt
                    self._set_state(ConnectionState.DISCONNECTED)
                    raise
                raise ModbusConnectionError(
                    f"Connect to {self.address} aborted by disconnect", address=self.address
                ) from None
            except Exception as e:
                if generation == self._generation:
                    self._set_state(ConnectionState.DISCONNECTED)
                logger.error("[%s] connect failed: %s", self.name, e)
                raise
            finally:
                if self._pending_connect is attempt:
                    self._pending_connect = None
            if generation != self._generation:
                self._close_executor(executor)
                raise ModbusConnectionError(f"Connect to {self.address} aborted by disconnect", address=self.address)
            self._executor = executor
            logger.info("[%s] connected to %s", self.name, self.address)
            self._set_state(ConnectionState.CONNECTED)

    async def disconnect(self) -> None:
        """Tear down the link, cancelling any connect attempt, reconnection run and the heartbeat. Always safe."""
        self._abort_pending_connect()
        self._reconnector.stop()
        self._heartbeat_monitor.stop()
        if self._executor is None and self._state == ConnectionState.DISCONNECTED:
            logger.debug("[%s] not connected", self.name)
        else:
            self._teardown()
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("[%s] disconnected", self.name)
        await self._reconnector.wait()

    def stop_reconnect(self) -> None:
        """Cancel an in-progress reconnection run; a connected session stays connected."""
        if not self._reconnector.is_running:
            return
        self._reconnector.stop()
        if self._state == ConnectionState.RECONNECTING:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("[%s] reconnection stopped", self.name)

    def _handle_connection_lost(self, reason: str) -> None:
        # Synchronous so a loop that stops itself from inside its action
        # cannot be cancelled halfway through recovery
        if self._state != ConnectionState.CONNECTED:
            return
        logger.warning("[%s] connection lost: %s", self.name, reason)
        self._heartbeat_monitor.stop()
        self._teardown()
        if self._options.auto_reconnect:
            self._set_state(ConnectionState.RECONNECTING)
            self._reconnector.start()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _check_alive(self) -> bool:
        executor = self._executor
        return executor is not None and executor.is_alive()

    def _on_heartbeat_failure(self) -> None:
        self._handle_connection_lost("heartbeat check failed")

    def _on_reconnected(self) -> None:
        self._set_state(ConnectionState.CONNECTED)

    def _on_reconnect_give_up(self) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
        self.reconnect_failed.emit()

    # Raw register operations

    def _require_executor(self, operation: str) -> RequestExecutor:
        self._check_disposed()
        executor = self._executor
        if self._state != ConnectionState.CONNECTED or executor is None:
            raise NotConnectedError(operation, self._state.value)
        return executor

    async def _execute(self, operation: str, timeout: float, address: int, *args: Any, unit_id: int | None) -> Any:
        self._require_executor(operation)
        async with self._io_lock:
            # The link may have dropped while waiting for the previous request
            executor = self._require_executor(operation)
            method = getattr(executor, operation)
            unit = self.unit_id if unit_id is None else unit_id
            try:
                return await asyncio.wait_for(method(address, *args, unit_id=unit), timeout)
            except CommunicationError as e:
                self._handle_connection_lost(str(e))
                raise
            except asyncio.TimeoutError as e:
                err = CommunicationError(
                    f"{operation}({address}) timed out after {timeout}s",
                    operation=operation,
                    address=address,
                    cause=e,
                )
                self._handle_connection_lost(str(err))
                raise err from e
            except OSError as e:
                err = CommunicationError(str(e), operation=operation, address=address, cause=e)
                self._handle_connection_lost(str(err))
                raise err from e

    async def read_coils(self, address: int, count: int = 1, *, unit_id: int | None = None) -> list[bool]:
        _check_address(address)
        _check_count(count, MAX_READ_BITS)
        return await self._execute("read_coils", self._options.read_timeout, address, count, unit_id=unit_id)

    async def read_discrete_inputs(self, address: int, count: int = 1, *, unit_id: int | None = None) -> list[bool]:
        _check_address(address)
        _check_count(count, MAX_READ_BITS)
        return await self._execute(
            "read_discrete_inputs", self._options.read_timeout, address, count, unit_id=unit_id
        )

    async def read_holding_registers(self, address: int, count: int = 1, *, unit_id: int | None = None) -> list[int]:
        _check_address(address)
        _check_count(count, MAX_READ_REGISTERS)
        return await self._execute(
            "read_holding_registers", self._options.read_timeout, address, count, unit_id=unit_id
        )

    async def read_input_registers(self, address: int, count: int = 1, *, unit_id: int | None = None) -> list[int]:
        _check_address(address)
        _check_count(count, MAX_READ_REGISTERS)
        return await self._execute(
            "read_input_registers", self._options.read_timeout, address, count, unit_id=unit_id
        )

    async def write_single_coil(self, address: int, value: bool, *, unit_id: int | None = None) -> None:
        _check_address(address)
        await self._execute("write_single_coil", self._options.write_timeout, address, bool(value), unit_id=unit_id)

    async def write_single_register(self, address: int, value: int, *, unit_id: int | None = None) -> None:
        _check_address(address)
        _check_register(value)
        await self._execute("write_single_register", self._options.write_timeout, address, value, unit_id=unit_id)

    async def write_multiple_coils(
        self, address: int, values: Sequence[bool], *, unit_id: int | None = None
    ) -> None:
        _check_address(address)
        _check_count(len(values), MAX_WRITE_BITS)
        await self._execute(
            "write_multiple_coils", self._options.write_timeout, address, [bool(v) for v in values], unit_id=unit_id
        )

    async def write_multiple_registers(
        self, address: int, values: Sequence[int], *, unit_id: int | None = None
    ) -> None:
        _check_address(address)
        _check_count(len(values), MAX_WRITE_REGISTERS)
        for value in values:
            _check_register(value)
        await self._execute(
            "write_multiple_registers", self._options.write_timeout, address, list(values), unit_id=unit_id
        )

    # Polling attachment

    def create_poller(
        self,
        interval: float,
        action: Callable[["ModbusSession"], Awaitable[Any] | Any],
        on_error: ErrorCallback | None = None,
    ) -> Poller:
        """Standalone poller whose action receives this session; skipped while not connected."""

        async def _poll() -> None:
            if not self.is_connected:
                return
            await maybe_await(action(self))

        poller = Poller(_poll, interval, name=f"{self.name}.poller")
        if on_error is not None:
            poller.error.connect(on_error)
        return poller

    def create_poller_group(self, base_interval: float | None = None) -> PollerGroup:
        """Standalone poller group bound to this session (not started automatically)."""
        if base_interval is None:
            return PollerGroup(self)
        return PollerGroup(self, base_interval)

    def with_polling(
        self,
        interval: float,
        action: Callable[["ModbusSession"], Awaitable[Any] | Any],
        on_error: ErrorCallback | None = None,
        auto_start: bool = True,
    ) -> "ModbusSession":
        """Attach a poller; with auto_start it runs exactly while the session is connected."""
        self._check_disposed()
        if self.poller is not None:
            self.poller.dispose()
        self.poller = self.create_poller(interval, action, on_error)
        self._auto_start_poller = auto_start
        if auto_start and self.is_connected:
            self.poller.start()
        return self

    def with_poller_group(
        self,
        configure: Callable[[PollerGroup], Any],
        auto_start: bool = True,
        base_interval: float | None = None,
    ) -> "ModbusSession":
        """Attach a poller group built by ``configure(group)``."""
        self._check_disposed()
        if self.poller_group is not None:
            self.poller_group.dispose()
        group = self.create_poller_group(base_interval)
        configure(group)
        self.poller_group = group
        self._auto_start_group = auto_start
        if auto_start and self.is_connected:
            group.start()
        return self

    # Lifetime

    def dispose(self) -> None:
        """Release the transport, stop every loop and detach all subscribers. Idempotent."""
        if self._disposed:
            return
        self._abort_pending_connect()
        self._reconnector.stop()
        self._heartbeat_monitor.stop()
        if self.poller is not None:
            self.poller.dispose()
            self.poller = None
        if self.poller_group is not None:
            self.poller_group.dispose()
            self.poller_group = None
        self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        self._disposed = True
        for signal in (self.state_changed, self.reconnecting, self.reconnect_failed, self.heartbeat):
            signal.clear()
        logger.debug("[%s] disposed", self.name)

    async def __aenter__(self) -> "ModbusSession":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()
        self.dispose()
