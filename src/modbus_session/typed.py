"""Typed register helpers: wide scalars, register bits and retries on top of a session."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence, TypeVar

from .codec import Number, check_bit_index, decode_many, encode, encode_many, get_bit, register_to_bits, set_bit
from .errors import NotConnectedError
from .events import maybe_await
from .types import DataType, ModbusTable, WordOrder

if TYPE_CHECKING:
    from .session import ModbusSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAY = 0.1


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 0,
    *,
    delay: float = DEFAULT_RETRY_DELAY,
    on_error: Callable[[BaseException], Any] | None = None,
    name: str = "operation",
) -> T:
    """
    Run operation(), re-running it up to ``retries`` more times on failure with a
    fixed delay. After the last failure ``on_error`` (if given) is called and the
    exception is re-raised. NotConnectedError is never retried.
    """
    attempts = 0
    while True:
        try:
            result = await operation()
            logger.debug("%s ok: %r", name, result)
            return result
        except NotConnectedError:
            raise
        except Exception as e:
            attempts += 1
            if attempts > retries:
                logger.error("%s failed: %s", name, e)
                if on_error is not None:
                    await maybe_await(on_error(e))
                raise
            logger.warning("%s retry %d/%d: %s", name, attempts, retries, e)
            await asyncio.sleep(delay)


def _read_method(session: "ModbusSession", table: ModbusTable) -> Callable[..., Awaitable[list[int]]]:
    if table == ModbusTable.HOLDING_REGISTER:
        return session.read_holding_registers
    if table == ModbusTable.INPUT_REGISTER:
        return session.read_input_registers
    raise ValueError(f"Typed reads need a register table, got {table.value}")


async def read_values(
    session: "ModbusSession",
    address: int,
    dtype: DataType,
    count: int,
    order: WordOrder | None = None,
    *,
    table: ModbusTable = ModbusTable.HOLDING_REGISTER,
    retries: int = 0,
) -> list[Number]:
    """Read ``count`` contiguous scalars of ``dtype``; order defaults to the session's word order."""
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    read = _read_method(session, table)
    order = order or session.word_order

    async def _op() -> list[Number]:
        registers = await read(address, count * dtype.word_count)
        return decode_many(registers, dtype, order)

    return await with_retry(_op, retries, name=f"read {dtype.value}[{count}] @{address}")


async def read_value(
    session: "ModbusSession",
    address: int,
    dtype: DataType,
    order: WordOrder | None = None,
    *,
    table: ModbusTable = ModbusTable.HOLDING_REGISTER,
    retries: int = 0,
) -> Number:
    values = await read_values(session, address, dtype, 1, order, table=table, retries=retries)
    return values[0]


async def write_values(
    session: "ModbusSession",
    address: int,
    values: Sequence[Number],
    dtype: DataType,
    order: WordOrder | None = None,
    *,
    retries: int = 0,
) -> None:
    """Encode values back to back and write them to holding registers."""
    order = order or session.word_order
    registers = encode_many(values, dtype, order)
    if not registers:
        raise ValueError("Nothing to write")

    async def _op() -> None:
        if len(registers) == 1:
            await session.write_single_register(address, registers[0])
        else:
            await session.write_multiple_registers(address, registers)

    await with_retry(_op, retries, name=f"write {dtype.value}[{len(values)}] @{address}")


async def write_value(
    session: "ModbusSession",
    address: int,
    value: Number,
    dtype: DataType,
    order: WordOrder | None = None,
    *,
    retries: int = 0,
) -> None:
    # Validate before any I/O so a bad value never reaches the device
    encode(value, dtype, order or session.word_order)
    await write_values(session, address, [value], dtype, order, retries=retries)


async def read_float(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> float:
    return float(await read_value(session, address, DataType.FLOAT32, order, **kw))


async def write_float(
    session: "ModbusSession", address: int, value: float, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.FLOAT32, order, **kw)


async def read_double(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> float:
    return float(await read_value(session, address, DataType.FLOAT64, order, **kw))


async def write_double(
    session: "ModbusSession", address: int, value: float, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.FLOAT64, order, **kw)


async def read_int32(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> int:
    return int(await read_value(session, address, DataType.INT32, order, **kw))


async def write_int32(
    session: "ModbusSession", address: int, value: int, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.INT32, order, **kw)


async def read_uint32(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> int:
    return int(await read_value(session, address, DataType.UINT32, order, **kw))


async def write_uint32(
    session: "ModbusSession", address: int, value: int, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.UINT32, order, **kw)


async def read_int64(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> int:
    return int(await read_value(session, address, DataType.INT64, order, **kw))


async def write_int64(
    session: "ModbusSession", address: int, value: int, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.INT64, order, **kw)


async def read_uint64(session: "ModbusSession", address: int, order: WordOrder | None = None, **kw: Any) -> int:
    return int(await read_value(session, address, DataType.UINT64, order, **kw))


async def write_uint64(
    session: "ModbusSession", address: int, value: int, order: WordOrder | None = None, **kw: Any
) -> None:
    await write_value(session, address, value, DataType.UINT64, order, **kw)


# Register bits and booleans


async def read_register_bits(session: "ModbusSession", address: int, retries: int = 0) -> list[bool]:
    """All 16 bits of a holding register, index 0 = least significant bit."""

    async def _op() -> list[bool]:
        registers = await session.read_holding_registers(address, 1)
        return register_to_bits(registers[0])

    return await with_retry(_op, retries, name=f"read bits @{address}")


async def read_register_bit(session: "ModbusSession", address: int, bit: int, retries: int = 0) -> bool:
    check_bit_index(bit)

    async def _op() -> bool:
        registers = await session.read_holding_registers(address, 1)
        return get_bit(registers[0], bit)

    return await with_retry(_op, retries, name=f"read bit {bit} @{address}")


async def write_register_bit(
    session: "ModbusSession", address: int, bit: int, value: bool, retries: int = 0
) -> None:
    """Read-modify-write one bit of a holding register."""
    check_bit_index(bit)

    async def _op() -> None:
        registers = await session.read_holding_registers(address, 1)
        await session.write_single_register(address, set_bit(registers[0], bit, value))

    await with_retry(_op, retries, name=f"write bit {bit}={value} @{address}")


async def read_boolean(session: "ModbusSession", address: int, retries: int = 0) -> bool:
    """A holding register used as a flag: 0 = False, anything else = True."""
    values = await read_booleans(session, address, 1, retries=retries)
    return values[0]


async def read_booleans(session: "ModbusSession", address: int, count: int, retries: int = 0) -> list[bool]:
    async def _op() -> list[bool]:
        registers = await session.read_holding_registers(address, count)
        return [r != 0 for r in registers]

    return await with_retry(_op, retries, name=f"read booleans[{count}] @{address}")


async def write_boolean(session: "ModbusSession", address: int, value: bool, retries: int = 0) -> None:
    await with_retry(
        lambda: session.write_single_register(address, 1 if value else 0),
        retries,
        name=f"write boolean={value} @{address}",
    )


async def increment_register(session: "ModbusSession", address: int, step: int = 1, retries: int = 0) -> int:
    """Add step to a holding register (wrapping at 16 bits) and return the new value."""

    async def _op() -> int:
        registers = await session.read_holding_registers(address, 1)
        new_value = (registers[0] + step) & 0xFFFF
        await session.write_single_register(address, new_value)
        return new_value

    return await with_retry(_op, retries, name=f"increment @{address} by {step}")
