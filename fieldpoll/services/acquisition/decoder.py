"""
Register Decoder

Pure functions turning raw register bytes into typed values. No I/O and no
shared state, so any number of pollers may call them concurrently.

Raw bytes arrive in wire order: register after register, each one as the
device sent it. ``byte_order`` says how the two bytes inside a register are
laid out, ``word_order`` how registers of a multi-register value are laid
out. Both are normalized to big-endian before unpacking.
"""

import math
import struct

from fieldpoll.common.config import REGISTER_COUNTS, ByteOrder, DataType, WordOrder
from fieldpoll.common.exceptions import DecodeError

# struct formats for the big-endian normalized form
_FORMATS: dict[DataType, str] = {
    DataType.INT16: ">h",
    DataType.UINT16: ">H",
    DataType.INT32: ">i",
    DataType.UINT32: ">I",
    DataType.INT64: ">q",
    DataType.UINT64: ">Q",
    DataType.FLOAT32: ">f",
    DataType.FLOAT64: ">d",
}


def register_count(data_type: DataType) -> int:
    """Number of 16-bit registers a value of this type occupies"""
    return REGISTER_COUNTS[data_type]


def byte_count(data_type: DataType) -> int:
    return 2 * REGISTER_COUNTS[data_type]


def normalize(raw: bytes, byte_order: ByteOrder, word_order: WordOrder) -> bytes:
    """Reorder raw register bytes into plain big-endian"""
    registers = [raw[i:i + 2] for i in range(0, len(raw), 2)]

    if byte_order == ByteOrder.LITTLE:
        registers = [reg[::-1] for reg in registers]

    if word_order == WordOrder.LOW_WORD_FIRST:
        registers.reverse()

    return b"".join(registers)


def decode(
    raw: bytes,
    data_type: DataType,
    byte_order: ByteOrder = ByteOrder.BIG,
    word_order: WordOrder = WordOrder.HIGH_WORD_FIRST,
) -> bool | int | float:
    """
    Decode one value.

    Args:
        raw: Register bytes in wire order
        data_type: Declared type of the value
        byte_order: Byte layout inside each register
        word_order: Register layout for 32/64-bit types

    Returns:
        bool, int or float depending on data_type

    Raises:
        DecodeError: length does not match the type, or a float is NaN/Inf
    """
    expected = byte_count(data_type)
    if len(raw) != expected:
        raise DecodeError(
            f"{data_type.value} needs {expected} bytes, got {len(raw)}",
            data_type=data_type.value,
        )

    ordered = normalize(bytes(raw), byte_order, word_order)

    if data_type == DataType.BOOL:
        return bool(ordered[1] & 0x01)

    value = struct.unpack(_FORMATS[data_type], ordered)[0]

    # Devices use NaN/Inf as "no data" markers
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise DecodeError(
            f"{data_type.value} value is not finite ({value})",
            data_type=data_type.value,
        )

    return value
