"""
ModbusSlave: a Modbus TCP server (slave) on pymodbus' server and datastore.

The slave serves coils, discrete inputs, holding registers and input registers
for one unit id. Writes made by remote masters are found by comparing the
holding register and coil tables against a snapshot every
``change_detection_interval`` seconds and reported through signals. Writes made
locally through ``set_*`` update the snapshot as well, so they are not reported.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Sequence

from pymodbus import ModbusDeviceIdentification
from pymodbus.datastore import ModbusDeviceContext, ModbusSequentialDataBlock, ModbusServerContext
from pymodbus.server import ModbusTcpServer

from .errors import ConfigError, ModbusConnectionError
from .events import Signal
from .types import ModbusTable

logger = logging.getLogger(__name__)

# Function codes the datastore uses to select a table
_FUNCTION_CODES = {
    ModbusTable.COIL: 1,
    ModbusTable.DISCRETE_INPUT: 2,
    ModbusTable.HOLDING_REGISTER: 3,
    ModbusTable.INPUT_REGISTER: 4,
}


@dataclass(frozen=True)
class SlaveOptions:
    """Listen endpoint, unit id, table sizes and change detection period (seconds)."""

    host: str = "0.0.0.0"
    port: int = 502
    unit_id: int = 1
    holding_register_count: int = 100
    coil_count: int = 100
    input_register_count: int = 100
    discrete_input_count: int = 100
    change_detection_interval: float = 0.1

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def with_endpoint(self, host: str, port: int | None = None) -> "SlaveOptions":
        return replace(self, host=host, port=port if port is not None else self.port)

    def with_unit_id(self, unit_id: int) -> "SlaveOptions":
        return replace(self, unit_id=unit_id)

    def with_data_store(self, holding_register_count: int, coil_count: int) -> "SlaveOptions":
        return replace(self, holding_register_count=holding_register_count, coil_count=coil_count)

    def validate(self) -> "SlaveOptions":
        if not self.host or not self.host.strip():
            raise ConfigError("host", "listen host is required")
        # Port 0 binds an ephemeral port
        if not 0 <= self.port <= 65535:
            raise ConfigError("port", f"port must be 0..65535, got {self.port}")
        if not 0 <= self.unit_id <= 255:
            raise ConfigError("unit_id", f"unit_id must be 0..255, got {self.unit_id}")
        for name in ("holding_register_count", "coil_count", "input_register_count", "discrete_input_count"):
            value = getattr(self, name)
            if not 0 <= value <= 0x10000:
                raise ConfigError(name, f"{name} must be 0..65536, got {value}")
        if self.change_detection_interval <= 0:
            raise ConfigError(
                "change_detection_interval",
                f"change_detection_interval must be > 0, got {self.change_detection_interval}",
            )
        return self


def _block(size: int, fill: Any) -> ModbusSequentialDataBlock:
    # One spare slot: the device context may shift protocol addresses by one
    return ModbusSequentialDataBlock(0, [fill] * (size + 1))


class ModbusSlave:
    """
    Modbus TCP slave with an in-memory register image.

    Holding register i starts at ``i * 10`` and coil i at ``i % 2 == 0``; input
    registers and discrete inputs start cleared.

    Signals: ``holding_register_written(address, old, new)``,
    ``coil_written(address, value)``, ``client_connected(count)`` and
    ``client_disconnected(count)``, where count is the number of connected
    masters after the change.
    """

    def __init__(self, name: str, options: SlaveOptions | None = None) -> None:
        if not name or not name.strip():
            raise ConfigError("name", "Slave name cannot be empty")
        self.name = name
        self.options = (options or SlaveOptions()).validate()

        opts = self.options
        self._device = ModbusDeviceContext(
            co=_block(opts.coil_count, False),
            di=_block(opts.discrete_input_count, False),
            hr=_block(opts.holding_register_count, 0),
            ir=_block(opts.input_register_count, 0),
        )
        # Seed through the context so local and remote addressing agree
        if opts.holding_register_count:
            self._device.setValues(
                _FUNCTION_CODES[ModbusTable.HOLDING_REGISTER],
                0,
                [(i * 10) & 0xFFFF for i in range(opts.holding_register_count)],
            )
        if opts.coil_count:
            self._device.setValues(_FUNCTION_CODES[ModbusTable.COIL], 0, [i % 2 == 0 for i in range(opts.coil_count)])
        self._context = ModbusServerContext(devices={opts.unit_id: self._device}, single=False)
        self._identity = ModbusDeviceIdentification()
        self._identity.ProductName = name
        self._identity.ModelName = "pymodbus-session slave"

        self._last_holding = self._get(ModbusTable.HOLDING_REGISTER, 0, opts.holding_register_count)
        self._last_coils = [bool(v) for v in self._get(ModbusTable.COIL, 0, opts.coil_count)]

        self._server: ModbusTcpServer | None = None
        self._monitor: asyncio.Task | None = None
        self._clients = 0
        self._disposed = False

        self.holding_register_written = Signal(f"{name}.holding_register_written")
        self.coil_written = Signal(f"{name}.coil_written")
        self.client_connected = Signal(f"{name}.client_connected")
        self.client_disconnected = Signal(f"{name}.client_disconnected")

    def __repr__(self) -> str:
        state = "running" if self.is_running else "stopped"
        return f"<ModbusSlave {self.name!r} {self.options.address} {state}>"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return self._clients

    @property
    def bound_port(self) -> int | None:
        """Port actually listened on (useful with port 0), or None when stopped."""
        server = self._server
        if server is None or server.transport is None:
            return None
        return server.transport.sockets[0].getsockname()[1]

    # Datastore access

    def _get(self, table: ModbusTable, address: int, count: int) -> list[Any]:
        if count == 0:
            return []
        return list(self._device.getValues(_FUNCTION_CODES[table], address, count))

    def _check_range(self, table: ModbusTable, address: int, count: int) -> None:
        size = {
            ModbusTable.COIL: self.options.coil_count,
            ModbusTable.DISCRETE_INPUT: self.options.discrete_input_count,
            ModbusTable.HOLDING_REGISTER: self.options.holding_register_count,
            ModbusTable.INPUT_REGISTER: self.options.input_register_count,
        }[table]
        if address < 0 or count < 1 or address + count > size:
            raise ValueError(f"{table.value}[{address}:{address + count}] outside table of {size}")

    def read(self, table: ModbusTable, address: int, count: int = 1) -> list[Any]:
        """Read from any table of the local image."""
        self._check_range(table, address, count)
        values = self._get(table, address, count)
        if table.is_bit:
            return [bool(v) for v in values]
        return values

    def read_holding_registers(self, address: int, count: int = 1) -> list[int]:
        return self.read(ModbusTable.HOLDING_REGISTER, address, count)

    def read_coils(self, address: int, count: int = 1) -> list[bool]:
        return self.read(ModbusTable.COIL, address, count)

    def set_holding_registers(self, address: int, values: Sequence[int]) -> None:
        self._check_range(ModbusTable.HOLDING_REGISTER, address, len(values))
        for value in values:
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"Register value out of range 0..65535: {value}")
        self._device.setValues(_FUNCTION_CODES[ModbusTable.HOLDING_REGISTER], address, list(values))
        self._last_holding[address : address + len(values)] = list(values)

    def set_holding_register(self, address: int, value: int) -> None:
        self.set_holding_registers(address, [value])

    def set_coils(self, address: int, values: Sequence[bool]) -> None:
        self._check_range(ModbusTable.COIL, address, len(values))
        bits = [bool(v) for v in values]
        self._device.setValues(_FUNCTION_CODES[ModbusTable.COIL], address, bits)
        self._last_coils[address : address + len(bits)] = bits

    def set_coil(self, address: int, value: bool) -> None:
        self.set_coils(address, [value])

    def set_input_registers(self, address: int, values: Sequence[int]) -> None:
        self._check_range(ModbusTable.INPUT_REGISTER, address, len(values))
        self._device.setValues(_FUNCTION_CODES[ModbusTable.INPUT_REGISTER], address, list(values))

    def set_discrete_inputs(self, address: int, values: Sequence[bool]) -> None:
        self._check_range(ModbusTable.DISCRETE_INPUT, address, len(values))
        self._device.setValues(_FUNCTION_CODES[ModbusTable.DISCRETE_INPUT], address, [bool(v) for v in values])

    # Change detection

    def detect_changes(self) -> int:
        """Compare holding registers and coils with the snapshot, emit a signal per change."""
        changes = 0
        current = self._get(ModbusTable.HOLDING_REGISTER, 0, len(self._last_holding))
        for address, (old, new) in enumerate(zip(self._last_holding, current)):
            if old != new:
                self._last_holding[address] = new
                self.holding_register_written.emit(address, old, new)
                changes += 1
        coils = [bool(v) for v in self._get(ModbusTable.COIL, 0, len(self._last_coils))]
        for address, (old, new) in enumerate(zip(self._last_coils, coils)):
            if old != new:
                self._last_coils[address] = new
                self.coil_written.emit(address, new)
                changes += 1
        return changes

    async def _watch(self) -> None:
        me = asyncio.current_task()
        while self._monitor is me:
            await asyncio.sleep(self.options.change_detection_interval)
            try:
                self.detect_changes()
            except Exception as e:
                logger.error("[%s] change detection failed: %s", self.name, e)

    def _on_connect_change(self, connected: bool) -> None:
        if connected:
            self._clients += 1
            logger.info("[%s] master connected (%d connected)", self.name, self._clients)
            self.client_connected.emit(self._clients)
        else:
            self._clients = max(0, self._clients - 1)
            logger.info("[%s] master disconnected (%d connected)", self.name, self._clients)
            self.client_disconnected.emit(self._clients)

    # Lifetime

    async def start(self) -> None:
        """Listen on the configured endpoint. No-op when already running."""
        if self._disposed:
            raise RuntimeError(f"Slave {self.name!r} has been disposed")
        if self._server is not None:
            return
        opts = self.options
        server = ModbusTcpServer(
            self._context,
            identity=self._identity,
            address=(opts.host, opts.port),
            trace_connect=self._on_connect_change,
        )
        await server.serve_forever(background=True)
        if server.transport is None:
            raise ModbusConnectionError(f"Cannot listen on {opts.address}", address=opts.address)
        self._server = server
        self._monitor = asyncio.get_running_loop().create_task(self._watch(), name=f"{self.name}.watch")
        logger.info("[%s] listening on %s:%s (unit %d)", self.name, opts.host, self.bound_port, opts.unit_id)

    async def stop(self) -> None:
        """Stop listening and drop connected masters. Safe when not running."""
        server, self._server = self._server, None
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor.cancel()
        if server is None:
            return
        await server.shutdown()
        # Pick up writes that landed after the last detection pass
        self.detect_changes()
        self._clients = 0
        logger.info("[%s] stopped", self.name)

    def dispose(self) -> None:
        """Detach all subscribers; call stop() first when running. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        signals = (self.holding_register_written, self.coil_written, self.client_connected, self.client_disconnected)
        for signal in signals:
            signal.clear()

    async def __aenter__(self) -> "ModbusSlave":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
        self.dispose()
