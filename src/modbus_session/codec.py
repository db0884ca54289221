"""
Word-order codec: convert between 16-bit register words and wide scalars.

Registers arrive big-endian per word. A wide value is decoded by flattening its
words into a big-endian byte string, optionally reversing the word order,
optionally swapping the two bytes of every word, and unpacking the result as a
big-endian scalar. Encoding runs the same steps backwards.
"""

import struct
from typing import Iterable, Sequence

from .types import DataType, WordOrder

Number = int | float


def registers_to_bytes(registers: Sequence[int]) -> bytes:
    """Flatten register words into bytes, high byte of each word first."""
    out = bytearray()
    for reg in registers:
        if not 0 <= reg <= 0xFFFF:
            raise ValueError(f"Register value out of range 0..65535: {reg}")
        out += reg.to_bytes(2, byteorder="big")
    return bytes(out)


def bytes_to_registers(data: bytes) -> list[int]:
    """Pair bytes back into 16-bit register words (high byte first)."""
    if len(data) % 2:
        raise ValueError(f"Byte length must be even, got {len(data)}")
    return [int.from_bytes(data[i : i + 2], byteorder="big") for i in range(0, len(data), 2)]


def swap_words(data: bytes) -> bytes:
    """
    Reverse the order of the 2-byte groups. For an odd word count the middle
    word keeps its position.
    """
    words = [data[i : i + 2] for i in range(0, len(data), 2)]
    return b"".join(reversed(words))


def swap_bytes(data: bytes) -> bytes:
    """Swap the two bytes inside every 2-byte group."""
    out = bytearray(data)
    out[0::2], out[1::2] = data[1::2], data[0::2]
    return bytes(out)


def _to_big_endian(data: bytes, order: WordOrder) -> bytes:
    if order.swap_words:
        data = swap_words(data)
    if order.swap_bytes:
        data = swap_bytes(data)
    return data


def _from_big_endian(data: bytes, order: WordOrder) -> bytes:
    if order.swap_bytes:
        data = swap_bytes(data)
    if order.swap_words:
        data = swap_words(data)
    return data


def decode(registers: Sequence[int], dtype: DataType, order: WordOrder = WordOrder.ABCD) -> Number:
    """
    Decode exactly dtype.word_count registers into a scalar.

    16-bit types occupy a single word and ignore the word order.
    """
    spec = dtype.spec
    if len(registers) != spec.word_count:
        raise ValueError(f"{dtype.value} needs {spec.word_count} register(s), got {len(registers)}")
    data = registers_to_bytes(registers)
    if spec.word_count > 1:
        data = _to_big_endian(data, WordOrder(order))
    return struct.unpack(">" + spec.struct_char, data)[0]


def encode(value: Number, dtype: DataType, order: WordOrder = WordOrder.ABCD) -> list[int]:
    """Encode a scalar into dtype.word_count register words."""
    spec = dtype.spec
    if not spec.is_float:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{dtype.value} requires an integer, got {value!r}")
            value = int(value)
    try:
        data = struct.pack(">" + spec.struct_char, value)
    except (struct.error, OverflowError) as e:
        raise ValueError(f"Value {value!r} out of range for {dtype.value}") from e
    if spec.word_count > 1:
        data = _from_big_endian(data, WordOrder(order))
    return bytes_to_registers(data)


def decode_many(registers: Sequence[int], dtype: DataType, order: WordOrder = WordOrder.ABCD) -> list[Number]:
    """Decode contiguously packed scalars (no padding between values)."""
    n = dtype.word_count
    if len(registers) % n:
        raise ValueError(f"Register count {len(registers)} is not a multiple of {n} for {dtype.value}")
    return [decode(registers[i : i + n], dtype, order) for i in range(0, len(registers), n)]


def encode_many(values: Iterable[Number], dtype: DataType, order: WordOrder = WordOrder.ABCD) -> list[int]:
    """Encode scalars back to back into one register list."""
    out: list[int] = []
    for value in values:
        out.extend(encode(value, dtype, order))
    return out


def register_to_bits(value: int) -> list[bool]:
    """Split a register into 16 booleans, index 0 = least significant bit."""
    return [bool(value & (1 << i)) for i in range(16)]


def check_bit_index(index: int) -> None:
    if not 0 <= index <= 15:
        raise ValueError(f"Bit index must be 0..15, got {index}")


def get_bit(value: int, index: int) -> bool:
    check_bit_index(index)
    return bool(value & (1 << index))


def set_bit(value: int, index: int, on: bool) -> int:
    """Return value with bit index set or cleared."""
    check_bit_index(index)
    if on:
        return (value | (1 << index)) & 0xFFFF
    return value & ~(1 << index) & 0xFFFF
