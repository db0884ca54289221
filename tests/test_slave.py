"""Tests for ModbusSlave: datastore image, change detection and a live master/slave round trip."""

import asyncio
from typing import Any, Callable

import pytest

from modbus_session.config import SessionOptions
from modbus_session.errors import ConfigError
from modbus_session.session import ModbusSession
from modbus_session.slave import ModbusSlave, SlaveOptions
from modbus_session.types import ModbusTable


def small_options(**overrides: Any) -> SlaveOptions:
    fields: dict[str, Any] = {"host": "127.0.0.1", "port": 0, "holding_register_count": 10, "coil_count": 8}
    fields.update(overrides)
    return SlaveOptions(**fields)


def remote_write(slave: ModbusSlave, table: ModbusTable, address: int, values: list[Any]) -> None:
    """Write through the server context, the way a request from a master lands."""
    function_code = {ModbusTable.COIL: 5, ModbusTable.HOLDING_REGISTER: 6}[table]
    slave._context[slave.options.unit_id].setValues(function_code, address, values)


class TestOptions:
    def test_defaults(self) -> None:
        opts = SlaveOptions()
        assert opts.address == "0.0.0.0:502"
        assert opts.unit_id == 1
        assert opts.holding_register_count == 100
        assert opts.coil_count == 100
        assert opts.change_detection_interval == 0.1

    def test_fluent_helpers(self) -> None:
        opts = SlaveOptions().with_endpoint("127.0.0.1", 5020).with_unit_id(3).with_data_store(20, 4)
        assert opts.address == "127.0.0.1:5020"
        assert opts.unit_id == 3
        assert (opts.holding_register_count, opts.coil_count) == (20, 4)

    def test_validation(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            SlaveOptions(port=70000).validate()
        assert exc_info.value.field == "port"
        with pytest.raises(ConfigError):
            SlaveOptions(host=" ").validate()
        with pytest.raises(ConfigError):
            SlaveOptions(change_detection_interval=0).validate()
        with pytest.raises(ConfigError):
            SlaveOptions(coil_count=-1).validate()
        with pytest.raises(ConfigError):
            ModbusSlave("", SlaveOptions())


class TestDataStore:
    def test_initial_image(self) -> None:
        slave = ModbusSlave("sim", small_options())

        assert slave.read_holding_registers(0, 4) == [0, 10, 20, 30]
        assert slave.read_coils(0, 4) == [True, False, True, False]
        assert slave.read(ModbusTable.INPUT_REGISTER, 0, 2) == [0, 0]
        assert slave.read(ModbusTable.DISCRETE_INPUT, 0, 2) == [False, False]
        assert slave.is_running is False
        assert slave.bound_port is None

    def test_local_writes_are_not_reported(self) -> None:
        slave = ModbusSlave("sim", small_options())
        written: list[Any] = []
        slave.holding_register_written.connect(lambda *args: written.append(args))
        slave.coil_written.connect(lambda *args: written.append(args))

        slave.set_holding_register(2, 500)
        slave.set_holding_registers(4, [1, 2])
        slave.set_coil(1, True)
        slave.set_input_registers(0, [7])
        slave.set_discrete_inputs(3, [True])

        assert slave.detect_changes() == 0
        assert written == []
        assert slave.read_holding_registers(2, 4) == [500, 30, 1, 2]
        assert slave.read_coils(1) == [True]
        assert slave.read(ModbusTable.INPUT_REGISTER, 0) == [7]
        assert slave.read(ModbusTable.DISCRETE_INPUT, 3) == [True]

    def test_range_checks(self) -> None:
        slave = ModbusSlave("sim", small_options())
        with pytest.raises(ValueError, match="outside table"):
            slave.read_holding_registers(9, 2)
        with pytest.raises(ValueError, match="outside table"):
            slave.set_coil(8, True)
        with pytest.raises(ValueError, match="out of range"):
            slave.set_holding_register(0, 70000)


class TestChangeDetection:
    def test_remote_writes_are_reported_once(self) -> None:
        slave = ModbusSlave("sim", small_options())
        registers: list[tuple[int, int, int]] = []
        coils: list[tuple[int, bool]] = []
        slave.holding_register_written.connect(lambda a, old, new: registers.append((a, old, new)))
        slave.coil_written.connect(lambda a, value: coils.append((a, value)))

        remote_write(slave, ModbusTable.HOLDING_REGISTER, 3, [99])
        remote_write(slave, ModbusTable.COIL, 0, [False])

        assert slave.detect_changes() == 2
        assert registers == [(3, 30, 99)]
        assert coils == [(0, False)]
        assert slave.detect_changes() == 0

    def test_watch_loop_reports_while_running(self, wait: Callable[..., Any]) -> None:
        slave = ModbusSlave("sim", small_options(change_detection_interval=0.01))
        registers: list[tuple[int, int, int]] = []
        slave.holding_register_written.connect(lambda a, old, new: registers.append((a, old, new)))

        async def main() -> None:
            async with slave:
                assert slave.is_running
                assert slave.bound_port
                remote_write(slave, ModbusTable.HOLDING_REGISTER, 1, [11])
                assert await wait(lambda: registers == [(1, 10, 11)])

        asyncio.run(main())
        assert slave.is_running is False

    def test_dispose(self) -> None:
        slave = ModbusSlave("sim", small_options())
        slave.coil_written.connect(lambda *args: None)
        slave.dispose()
        slave.dispose()
        assert len(slave.coil_written) == 0

        async def main() -> None:
            with pytest.raises(RuntimeError, match="disposed"):
                await slave.start()

        asyncio.run(main())


class TestMasterRoundTrip:
    """A ModbusSession over the real pymodbus client talking to a running slave."""

    def test_read_write_and_client_events(self, wait: Callable[..., Any]) -> None:
        slave = ModbusSlave("sim", small_options(change_detection_interval=0.01))
        registers: list[tuple[int, int, int]] = []
        coils: list[tuple[int, bool]] = []
        connected: list[int] = []
        disconnected: list[int] = []
        slave.holding_register_written.connect(lambda a, old, new: registers.append((a, old, new)))
        slave.coil_written.connect(lambda a, value: coils.append((a, value)))
        slave.client_connected.connect(connected.append)
        slave.client_disconnected.connect(disconnected.append)

        async def main() -> dict[str, Any]:
            await slave.start()
            opts = SessionOptions(
                host="127.0.0.1",
                port=slave.bound_port,
                connect_timeout=2.0,
                read_timeout=2.0,
                write_timeout=2.0,
            )
            session = ModbusSession("master", opts)
            try:
                await session.connect()
                assert await wait(lambda: connected == [1])
                result = {
                    "holding": await session.read_holding_registers(0, 3),
                    "coils": await session.read_coils(0, 3),
                }
                await session.write_single_register(5, 1234)
                await session.write_single_coil(1, True)
                assert await wait(lambda: bool(registers) and bool(coils))
                result["slave_view"] = slave.read_holding_registers(5)
                await session.disconnect()
                assert await wait(lambda: disconnected == [0])
                return result
            finally:
                session.dispose()
                await slave.stop()

        result = asyncio.run(main())
        assert result["holding"] == [0, 10, 20]
        assert result["coils"] == [True, False, True]
        assert result["slave_view"] == [1234]
        assert registers == [(5, 50, 1234)]
        assert coils == [(1, True)]
