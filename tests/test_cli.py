"""Tests for CLI module - value parsing and commands against a fake device."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from modbus_session.cli import (
    app,
    format_value,
    parse_bool,
    parse_data_type,
    parse_table,
    parse_value,
    parse_word_order,
)
from modbus_session.types import DataType, ModbusTable, WordOrder

from conftest import FakeTransport, refused

runner = CliRunner()


# ============================================================================
# Value Parsing Tests
# ============================================================================


class TestParseBool:
    """Test boolean value parsing."""

    def test_true_variants(self) -> None:
        for val in ["true", "True", "TRUE", "1", "on", "ON", "yes", "YES"]:
            assert parse_bool(val) is True

    def test_false_variants(self) -> None:
        for val in ["false", "False", "0", "off", "no", "NO"]:
            assert parse_bool(val) is False

    def test_whitespace_handling(self) -> None:
        assert parse_bool("  true  ") is True

    def test_invalid_values(self) -> None:
        with pytest.raises(ValueError, match="Invalid boolean value"):
            parse_bool("maybe")
        with pytest.raises(ValueError):
            parse_bool("")


class TestParse16Bit:
    """Test 16-bit register value parsing."""

    def test_decimal_and_hex(self) -> None:
        assert parse_value("1234", DataType.UINT16) == 1234
        assert parse_value("0xFFFF", DataType.UINT16) == 65535
        assert parse_value("  0x10  ", DataType.UINT16) == 16

    def test_signed(self) -> None:
        assert parse_value("-32768", DataType.INT16) == -32768
        with pytest.raises(ValueError, match="out of range"):
            parse_value("0x8000", DataType.INT16)

    def test_unsigned_range(self) -> None:
        with pytest.raises(ValueError, match="out of range"):
            parse_value("-1", DataType.UINT16)
        with pytest.raises(ValueError, match="out of range"):
            parse_value("65536", DataType.UINT16)

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_value("12.34", DataType.UINT16)


class TestParseValue:
    """Test typed value parsing."""

    def test_ranges_follow_data_type(self) -> None:
        assert parse_value("-1", DataType.INT32) == -1
        assert parse_value("0xFFFFFFFF", DataType.UINT32) == 0xFFFFFFFF
        assert parse_value("18446744073709551615", DataType.UINT64) == 2**64 - 1
        with pytest.raises(ValueError, match="out of range"):
            parse_value("-1", DataType.UINT32)
        with pytest.raises(ValueError, match="out of range"):
            parse_value("32768", DataType.INT16)

    def test_floats(self) -> None:
        assert parse_value("3.5", DataType.FLOAT32) == 3.5
        assert parse_value("-1e3", DataType.FLOAT64) == -1000.0
        with pytest.raises(ValueError):
            parse_value("1.5", DataType.INT32)

    def test_enum_parsers(self) -> None:
        assert parse_data_type("Float32") == DataType.FLOAT32
        assert parse_word_order("cdab") == WordOrder.CDAB
        assert parse_table("holding") == ModbusTable.HOLDING_REGISTER
        assert parse_table("discrete-input") == ModbusTable.DISCRETE_INPUT
        assert parse_table("coil") == ModbusTable.COIL
        with pytest.raises(ValueError, match="Invalid data type"):
            parse_data_type("int8")
        with pytest.raises(ValueError, match="Invalid word order"):
            parse_word_order("ACBD")
        with pytest.raises(ValueError, match="Invalid table"):
            parse_table("registers")


class TestFormatValue:
    def test_formatting(self) -> None:
        assert format_value(True) == "true"
        assert format_value(False) == "false"
        assert format_value(1234) == "1234"
        assert format_value(1.0) == "1"
        assert format_value(3.25) == "3.25"


# ============================================================================
# Command Tests (fake transport behind the session)
# ============================================================================


@pytest.fixture
def device() -> FakeTransport:
    fake = FakeTransport()
    with patch("modbus_session.session.PymodbusTransport", return_value=fake):
        yield fake


def test_ping(device: FakeTransport) -> None:
    result = runner.invoke(app, ["ping", "--host", "192.168.1.10"])

    assert result.exit_code == 0
    assert "OK: Connected to 192.168.1.10:502" in result.stdout
    assert device.executors[0].calls[0][0] == "read_holding_registers"
    assert device.executors[0].closed is True


def test_ping_json(device: FakeTransport) -> None:
    result = runner.invoke(app, ["ping", "--host", "192.168.1.10", "--port", "5020", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["address"] == "192.168.1.10:5020"
    assert data["status"] == "ok"
    assert data["rtt_ms"] >= 0


def test_ping_connection_refused(device: FakeTransport) -> None:
    device.default = refused()

    result = runner.invoke(app, ["ping", "--host", "192.168.1.10"])

    assert result.exit_code == 3
    assert "Connection failed" in result.output


def test_host_required() -> None:
    result = runner.invoke(app, ["ping"], env={"MODBUS_SESSION_HOST": ""})
    assert result.exit_code == 2


def test_host_from_environment(device: FakeTransport) -> None:
    result = runner.invoke(app, ["ping"], env={"MODBUS_SESSION_HOST": "10.1.1.1", "MODBUS_SESSION_PORT": "1502"})

    assert result.exit_code == 0
    assert "10.1.1.1:1502" in result.stdout


def test_read_registers(device: FakeTransport) -> None:
    device.memory.holding.update({7: 1234, 8: 5})

    result = runner.invoke(app, ["read", "holding_register", "7", "--count", "2", "--host", "192.168.1.10"])

    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["7: 1234", "8: 5"]


def test_read_float_json(device: FakeTransport) -> None:
    device.memory.holding.update({100: 0x0000, 101: 0x3F80})

    result = runner.invoke(
        app,
        ["read", "holding", "100", "--type", "float32", "--order", "CDAB", "--json", "--host", "192.168.1.10"],
    )

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data == {"table": "holding_register", "address": 100, "type": "float32", "values": [1.0]}


def test_read_coils(device: FakeTransport) -> None:
    device.memory.coils[3] = True

    result = runner.invoke(app, ["read", "coil", "2", "-n", "2", "--host", "192.168.1.10"])

    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["2: false", "3: true"]


def test_read_invalid_table() -> None:
    result = runner.invoke(app, ["read", "registers", "0", "--host", "192.168.1.10"])
    assert result.exit_code == 2


def test_write_register(device: FakeTransport) -> None:
    result = runner.invoke(app, ["write", "7", "0x10", "--host", "192.168.1.10"])

    assert result.exit_code == 0
    assert "OK: Wrote 7 = 16" in result.stdout
    assert device.memory.holding[7] == 16


def test_write_negative_int32(device: FakeTransport) -> None:
    # Use -- so -2 is not parsed as an option
    result = runner.invoke(app, ["write", "--host", "192.168.1.10", "--type", "int32", "20", "--", "-2"])

    assert result.exit_code == 0
    assert [device.memory.holding[20], device.memory.holding[21]] == [0xFFFF, 0xFFFE]


def test_write_coil(device: FakeTransport) -> None:
    result = runner.invoke(app, ["write", "3", "on", "--coil", "--host", "192.168.1.10"])

    assert result.exit_code == 0
    assert "OK: Wrote 3 = true" in result.stdout
    assert device.memory.coils[3] is True


def test_write_invalid_value() -> None:
    result = runner.invoke(app, ["write", "3", "70000", "--host", "192.168.1.10"])
    assert result.exit_code == 2
    assert "Invalid value" in result.output


def test_poll_iterations(device: FakeTransport) -> None:
    device.memory.holding.update({0: 5, 1: 6})

    result = runner.invoke(
        app,
        ["poll", "holding_register", "0", "--count", "2", "--interval", "0.02", "--iterations", "2", "--host", "h"],
    )

    assert result.exit_code == 0
    lines = result.stdout.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith(" 0=5 1=6")
    assert device.executors[0].closed is True


def test_poll_json(device: FakeTransport) -> None:
    device.memory.coils[1] = True

    result = runner.invoke(
        app,
        ["poll", "coil", "0", "-n", "2", "-i", "0.02", "--iterations", "1", "--json", "--host", "h"],
    )

    assert result.exit_code == 0
    data = json.loads(result.stdout.strip())
    assert "timestamp" in data
    assert data["values"] == {"0": False, "1": True}


def test_poll_invalid_interval() -> None:
    result = runner.invoke(app, ["poll", "holding", "0", "--interval", "0", "--host", "h"])
    assert result.exit_code == 2


def test_command_help() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("ping", "read", "write", "poll", "serve", "version"):
        assert command in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "pymodbus-session" in result.stdout


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "pymodbus-session" in result.stdout


def test_serve_for_duration() -> None:
    result = runner.invoke(app, ["serve", "--listen", "127.0.0.1", "--port", "0", "--duration", "0.05"])

    assert result.exit_code == 0
    assert "Listening on 127.0.0.1:" in result.output


def test_serve_invalid_table_size() -> None:
    result = runner.invoke(app, ["serve", "--port", "0", "--holding-count", "70000", "--duration", "0.05"])
    assert result.exit_code == 2
    assert "Invalid option" in result.output
