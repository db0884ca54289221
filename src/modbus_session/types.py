"""Core data model: connection state, register tables, word orders and data types."""

from dataclasses import dataclass
from enum import Enum


class ConnectionState(str, Enum):
    """Connection state of a client session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ModbusTable(str, Enum):
    """Modbus table types used for request dispatch."""

    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    INPUT_REGISTER = "input_register"
    HOLDING_REGISTER = "holding_register"

    @property
    def is_bit(self) -> bool:
        return self in (ModbusTable.COIL, ModbusTable.DISCRETE_INPUT)


class WordOrder(str, Enum):
    """
    Arrangement of a wide value over consecutive registers.

    Letters name the bytes of the value from most to least significant (A..D for
    32-bit values; the same pattern repeats for 64-bit values).
    """

    ABCD = "ABCD"  # high word first, high byte first (big-endian)
    CDAB = "CDAB"  # low word first, high byte first
    BADC = "BADC"  # high word first, low byte first
    DCBA = "DCBA"  # low word first, low byte first (little-endian)

    @property
    def swap_words(self) -> bool:
        return self in (WordOrder.CDAB, WordOrder.DCBA)

    @property
    def swap_bytes(self) -> bool:
        return self in (WordOrder.BADC, WordOrder.DCBA)


# Descriptive aliases for the four permutations
HIGH_WORD_HIGH_BYTE = WordOrder.ABCD
LOW_WORD_HIGH_BYTE = WordOrder.CDAB
HIGH_WORD_LOW_BYTE = WordOrder.BADC
LOW_WORD_LOW_BYTE = WordOrder.DCBA


class DataType(str, Enum):
    """Scalar types that can be packed onto 16-bit registers."""

    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT64 = "float64"

    @property
    def spec(self) -> "TypeSpec":
        return _TYPE_SPECS[self]

    @property
    def word_count(self) -> int:
        return _TYPE_SPECS[self].word_count


@dataclass(frozen=True)
class TypeSpec:
    """struct format character and register footprint for a DataType."""

    struct_char: str
    word_count: int
    is_float: bool = False


_TYPE_SPECS: dict[DataType, TypeSpec] = {
    DataType.UINT16: TypeSpec("H", 1),
    DataType.INT16: TypeSpec("h", 1),
    DataType.UINT32: TypeSpec("I", 2),
    DataType.INT32: TypeSpec("i", 2),
    DataType.FLOAT32: TypeSpec("f", 2, is_float=True),
    DataType.UINT64: TypeSpec("Q", 4),
    DataType.INT64: TypeSpec("q", 4),
    DataType.FLOAT64: TypeSpec("d", 4, is_float=True),
}
