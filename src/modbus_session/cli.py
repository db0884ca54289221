#!/usr/bin/env python3
"""Command-line interface for pymodbus-session using Typer."""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from . import typed
from .config import SessionOptions
from .errors import (
    CommunicationError,
    ConfigError,
    ModbusConnectionError,
    ModbusSessionError,
    NotConnectedError,
    ProtocolError,
)
from .session import ModbusSession
from .slave import ModbusSlave, SlaveOptions
from .types import DataType, ModbusTable, WordOrder

app = typer.Typer(
    name="modbus-session",
    help="Modbus TCP client sessions: ping, read, write and poll a remote device, or serve one.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Shared options and helpers
# ============================================================================

HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Device hostname or IP address", envvar="MODBUS_SESSION_HOST"),
]
PortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="Modbus TCP port", envvar="MODBUS_SESSION_PORT"),
]
UnitIdOption = Annotated[
    int,
    typer.Option("--unit-id", "-u", help="Modbus unit ID", envvar="MODBUS_SESSION_UNIT_ID"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Connect/read/write timeout in seconds", envvar="MODBUS_SESSION_TIMEOUT"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
TypeOption = Annotated[
    str,
    typer.Option("--type", help="Data type: uint16, int16, uint32, int32, float32, uint64, int64, float64"),
]
OrderOption = Annotated[
    str,
    typer.Option("--order", help="Word order for wide types: ABCD, CDAB, BADC, DCBA", envvar="MODBUS_SESSION_WORD_ORDER"),
]

# Exit codes: 2 = usage/value error, 3 = connection/Modbus error, 4 = unexpected
EXIT_USAGE = 2
EXIT_MODBUS = 3
EXIT_UNEXPECTED = 4


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_options(host: Optional[str], port: int, unit_id: int, timeout: float) -> SessionOptions:
    """Session options from the shared CLI flags; exits with usage error when --host is missing."""
    if not host:
        typer.echo("Error: --host is required for this command", err=True)
        raise typer.Exit(EXIT_USAGE)
    return SessionOptions(
        host=host,
        port=port,
        unit_id=unit_id,
        connect_timeout=timeout,
        read_timeout=timeout,
        write_timeout=timeout,
    )


def create_session(options: SessionOptions, name: str = "cli") -> ModbusSession:
    """Create the session used by a command."""
    try:
        return ModbusSession(name, options)
    except ConfigError as e:
        typer.echo(f"Error: Invalid option: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)


def parse_bool(value: str) -> bool:
    """Parse boolean value from string."""
    v = value.lower().strip()
    if v in ("true", "1", "on", "yes"):
        return True
    if v in ("false", "0", "off", "no"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


_INT_RANGES = {
    DataType.UINT16: (0, 0xFFFF),
    DataType.INT16: (-0x8000, 0x7FFF),
    DataType.UINT32: (0, 0xFFFFFFFF),
    DataType.INT32: (-0x80000000, 0x7FFFFFFF),
    DataType.UINT64: (0, 0xFFFFFFFFFFFFFFFF),
    DataType.INT64: (-0x8000000000000000, 0x7FFFFFFFFFFFFFFF),
}


def parse_value(value: str, dtype: DataType) -> int | float:
    """Parse a value for dtype: floats accept any real number, integers decimal or 0x hex within range."""
    v = value.strip()
    if dtype.spec.is_float:
        return float(v)
    num = int(v, 16) if v.lower().startswith("0x") else int(v)
    low, high = _INT_RANGES[dtype]
    if not (low <= num <= high):
        raise ValueError(f"{dtype.value} value out of range {low}..{high}: {num}")
    return num


def parse_data_type(value: str) -> DataType:
    try:
        return DataType(value.lower().strip())
    except ValueError:
        choices = ", ".join(d.value for d in DataType)
        raise ValueError(f"Invalid data type {value!r} (choose from {choices})") from None


def parse_word_order(value: str) -> WordOrder:
    try:
        return WordOrder(value.upper().strip())
    except ValueError:
        raise ValueError(f"Invalid word order {value!r} (choose from ABCD, CDAB, BADC, DCBA)") from None


def parse_table(value: str) -> ModbusTable:
    """Accept table names with dashes or underscores, plus short aliases."""
    aliases = {
        "coils": ModbusTable.COIL,
        "discrete": ModbusTable.DISCRETE_INPUT,
        "discrete-inputs": ModbusTable.DISCRETE_INPUT,
        "holding": ModbusTable.HOLDING_REGISTER,
        "input": ModbusTable.INPUT_REGISTER,
    }
    v = value.lower().strip()
    if v in aliases:
        return aliases[v]
    try:
        return ModbusTable(v.replace("-", "_"))
    except ValueError:
        raise ValueError(f"Invalid table {value!r} (coil, discrete_input, holding_register, input_register)") from None


def format_value(value: bool | int | float) -> str:
    """Format value for display."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def fail(message: str, code: int) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code)


def run_command(coro: Any, verbose: bool) -> Any:
    """Run a command coroutine, mapping library errors to exit codes."""
    try:
        return asyncio.run(coro)
    except typer.Exit:
        raise
    except ValueError as e:
        raise fail(f"Invalid value: {e}", EXIT_USAGE)
    except ModbusConnectionError as e:
        raise fail(f"Connection failed: {e}", EXIT_MODBUS)
    except (CommunicationError, ProtocolError, NotConnectedError) as e:
        raise fail(f"Modbus error: {e}", EXIT_MODBUS)
    except ModbusSessionError as e:
        raise fail(str(e), EXIT_MODBUS)
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(EXIT_UNEXPECTED)


async def _read_table(session: ModbusSession, table: ModbusTable, address: int, count: int) -> list[Any]:
    if table == ModbusTable.COIL:
        return await session.read_coils(address, count)
    if table == ModbusTable.DISCRETE_INPUT:
        return await session.read_discrete_inputs(address, count)
    if table == ModbusTable.INPUT_REGISTER:
        return await session.read_input_registers(address, count)
    return await session.read_holding_registers(address, count)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def ping(
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Test connectivity: connect, read holding register 0, disconnect.

    Reports the round trip time of the read.
    """
    setup_logging(verbose)
    session = create_session(build_options(host, port, unit_id, timeout))

    async def _ping() -> float:
        async with session:
            started = time.perf_counter()
            await session.read_holding_registers(0, 1)
            return (time.perf_counter() - started) * 1000.0

    elapsed_ms = run_command(_ping(), verbose)
    if json_output:
        typer.echo(json.dumps({"address": session.address, "status": "ok", "rtt_ms": round(elapsed_ms, 3)}))
    else:
        typer.echo(f"OK: Connected to {session.address} ({elapsed_ms:.1f} ms)")


@app.command()
def read(
    table: Annotated[str, typer.Argument(help="Table: coil, discrete_input, holding_register, input_register")],
    address: Annotated[int, typer.Argument(help="Start address (0-based)")],
    count: Annotated[int, typer.Option("--count", "-n", help="Number of values to read")] = 1,
    dtype: TypeOption = "uint16",
    order: OrderOption = "ABCD",
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Read values from a table.

    Register tables are decoded with --type (wide types span several registers
    arranged per --order). Bit tables ignore --type.
    """
    setup_logging(verbose)
    try:
        parsed_table = parse_table(table)
        parsed_type = parse_data_type(dtype)
        parsed_order = parse_word_order(order)
    except ValueError as e:
        raise fail(str(e), EXIT_USAGE)
    if count < 1:
        raise fail(f"--count must be >= 1, got {count}", EXIT_USAGE)

    session = create_session(build_options(host, port, unit_id, timeout).with_word_order(parsed_order))

    async def _read() -> list[Any]:
        async with session:
            if parsed_table.is_bit or parsed_type == DataType.UINT16:
                return await _read_table(session, parsed_table, address, count)
            return await typed.read_values(
                session, address, parsed_type, count, parsed_order, table=parsed_table
            )

    values = run_command(_read(), verbose)
    step = 1 if parsed_table.is_bit else parsed_type.word_count
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "table": parsed_table.value,
                    "address": address,
                    "type": None if parsed_table.is_bit else parsed_type.value,
                    "values": values,
                }
            )
        )
    else:
        for i, value in enumerate(values):
            typer.echo(f"{address + i * step}: {format_value(value)}")


@app.command()
def write(
    address: Annotated[int, typer.Argument(help="Start address (0-based)")],
    value: Annotated[str, typer.Argument(help="Value (bool for --coil; number for registers, 0x hex allowed)")],
    dtype: TypeOption = "uint16",
    order: OrderOption = "ABCD",
    coil: Annotated[bool, typer.Option("--coil", help="Write a coil instead of holding registers")] = False,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    verbose: VerboseOption = False,
) -> None:
    """
    Write one value to a coil or to holding registers.

    Coils accept true/false, 1/0, on/off, yes/no. Registers are encoded with
    --type and --order.
    """
    setup_logging(verbose)
    parsed: bool | int | float
    try:
        parsed_order = parse_word_order(order)
        if coil:
            parsed = parse_bool(value)
            parsed_type = None
        else:
            parsed_type = parse_data_type(dtype)
            parsed = parse_value(value, parsed_type)
    except ValueError as e:
        raise fail(f"Invalid value: {e}", EXIT_USAGE)

    session = create_session(build_options(host, port, unit_id, timeout).with_word_order(parsed_order))

    async def _write() -> None:
        async with session:
            if parsed_type is None:
                await session.write_single_coil(address, bool(parsed))
            else:
                await typed.write_value(session, address, parsed, parsed_type, parsed_order)

    run_command(_write(), verbose)
    typer.echo(f"OK: Wrote {address} = {format_value(parsed)}")


@app.command()
def poll(
    table: Annotated[str, typer.Argument(help="Table: coil, discrete_input, holding_register, input_register")],
    address: Annotated[int, typer.Argument(help="Start address (0-based)")],
    count: Annotated[int, typer.Option("--count", "-n", help="Number of values per sample")] = 1,
    interval: Annotated[float, typer.Option("--interval", "-i", help="Poll interval in seconds")] = 1.0,
    reconnect_interval: Annotated[
        float, typer.Option("--reconnect-interval", help="Seconds between reconnection attempts")
    ] = 5.0,
    max_attempts: Annotated[
        int, typer.Option("--max-attempts", help="Reconnection attempts before giving up (0 = forever)")
    ] = 0,
    heartbeat: Annotated[
        float, typer.Option("--heartbeat", help="Heartbeat interval in seconds (0 = off)")
    ] = 0.0,
    iterations: Annotated[
        int, typer.Option("--iterations", help="Stop after this many samples (0 = until Ctrl+C)")
    ] = 0,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Poll a block of values with auto-reconnect and print each sample.

    Output is one line per sample: timestamp followed by address=value pairs, or
    NDJSON with --json. Press Ctrl+C to stop.
    """
    setup_logging(verbose)
    try:
        parsed_table = parse_table(table)
    except ValueError as e:
        raise fail(str(e), EXIT_USAGE)
    if interval <= 0:
        raise fail(f"Interval must be positive, got {interval}", EXIT_USAGE)
    if count < 1:
        raise fail(f"--count must be >= 1, got {count}", EXIT_USAGE)

    options = build_options(host, port, unit_id, timeout).with_reconnect(reconnect_interval, max_attempts)
    if heartbeat > 0:
        options = options.with_heartbeat(heartbeat)
    session = create_session(options)

    def _emit(values: dict[int, Any]) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        if json_output:
            typer.echo(json.dumps({"timestamp": timestamp, "values": {str(k): v for k, v in values.items()}}))
        else:
            pairs = " ".join(f"{k}={format_value(v)}" for k, v in values.items())
            typer.echo(f"{timestamp} {pairs}")

    async def _poll() -> int:
        done = asyncio.Event()
        samples = 0
        gave_up = False

        async def _sample() -> None:
            nonlocal samples
            values = await _read_table(session, parsed_table, address, count)
            _emit({address + i: v for i, v in enumerate(values)})
            samples += 1
            if iterations and samples >= iterations:
                done.set()

        def _on_give_up() -> None:
            nonlocal gave_up
            gave_up = True
            done.set()

        def _on_task_error(name: str, exc: BaseException) -> None:
            typer.echo(f"Error: {name}: {exc}", err=True)

        def _on_reconnecting(attempt: int, limit: int) -> None:
            typer.echo(f"Reconnecting ({attempt}/{limit or 'unbounded'})...", err=True)

        session.reconnecting.connect(_on_reconnecting)
        session.reconnect_failed.connect(_on_give_up)
        session.with_poller_group(
            lambda group: group.add("sample", interval, _sample).on_error(_on_task_error),
            base_interval=min(interval, 0.1),
        )
        try:
            await session.connect()
            await done.wait()
        finally:
            await session.disconnect()
            session.dispose()
        if gave_up:
            raise ModbusConnectionError("Reconnection attempts exhausted", address=session.address)
        return samples

    run_command(_poll(), verbose)


@app.command()
def serve(
    listen: Annotated[
        str, typer.Option("--listen", "-l", help="Address to listen on", envvar="MODBUS_SESSION_LISTEN")
    ] = "0.0.0.0",
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    holding_count: Annotated[int, typer.Option("--holding-count", help="Holding registers served")] = 100,
    coil_count: Annotated[int, typer.Option("--coil-count", help="Coils served")] = 100,
    duration: Annotated[
        float, typer.Option("--duration", help="Stop after this many seconds (0 = until Ctrl+C)")
    ] = 0.0,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Run a Modbus TCP slave and print every write made by a master.

    Holding register i starts at i*10 and coil i at (i even). Output is one line
    per event, or NDJSON with --json. Press Ctrl+C to stop.
    """
    setup_logging(verbose)
    try:
        options = SlaveOptions(
            host=listen,
            port=port,
            unit_id=unit_id,
            holding_register_count=holding_count,
            coil_count=coil_count,
        )
        slave = ModbusSlave("cli", options)
    except ConfigError as e:
        raise fail(f"Invalid option: {e}", EXIT_USAGE)

    def _emit(event: str, **fields: Any) -> None:
        if json_output:
            typer.echo(json.dumps({"event": event, **fields}))
        else:
            typer.echo(f"{event} " + " ".join(f"{k}={format_value(v)}" for k, v in fields.items()))

    slave.holding_register_written.connect(
        lambda address, old, new: _emit("holding_register", address=address, old=old, new=new)
    )
    slave.coil_written.connect(lambda address, value: _emit("coil", address=address, value=value))
    slave.client_connected.connect(lambda clients: _emit("connected", clients=clients))
    slave.client_disconnected.connect(lambda clients: _emit("disconnected", clients=clients))

    async def _serve() -> None:
        async with slave:
            typer.echo(f"Listening on {listen}:{slave.bound_port} (unit {unit_id})", err=True)
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()

    run_command(_serve(), verbose)


@app.command()
def version() -> None:
    """Show package version."""
    typer.echo(f"pymodbus-session {__version__}")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"pymodbus-session {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    show_version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """modbus-session - Modbus TCP client sessions from the command line."""
    pass


if __name__ == "__main__":
    app()
