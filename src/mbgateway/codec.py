"""Convert characteristic values between wire bytes, storage bytes and Python values.

Wire bytes are what the transport exchanges: 16-bit registers as big-endian words
in register order, bit areas packed LSB-first. Storage bytes are the little-endian
layout held in the registry's blocks.
"""

import math
import struct
from typing import Any

from .errors import InvalidArgumentError
from .types import CharacteristicDescriptor, ValueType

Value = int | float | bytes

# struct codes per numeric type: (wire format, storage format)
_FORMATS: dict[ValueType, tuple[str, str]] = {
    ValueType.U8: (">H", "<B"),
    ValueType.U16: (">H", "<H"),
    ValueType.I16: (">h", "<h"),
    ValueType.U32: (">I", "<I"),
    ValueType.FLOAT: (">f", "<f"),
}

_RANGES: dict[ValueType, tuple[int, int]] = {
    ValueType.U8: (0, 0xFF),
    ValueType.U16: (0, 0xFFFF),
    ValueType.I16: (-0x8000, 0x7FFF),
    ValueType.U32: (0, 0xFFFFFFFF),
}


def storage_width(vtype: ValueType) -> int:
    """Smallest storage size, in bytes, that can hold a value of this type."""
    if vtype is ValueType.ASCII:
        return 1
    return struct.calcsize(_FORMATS[vtype][1])


def pack_bits(bits: list[bool], count: int) -> bytes:
    """Pack the first `count` bits LSB-first into bytes."""
    out = bytearray((count + 7) // 8)
    for i, bit in enumerate(bits[:count]):
        if bit:
            out[i // 8] |= 1 << (i % 8)
    return bytes(out)


def unpack_bits(data: bytes, count: int) -> list[bool]:
    """Inverse of pack_bits; missing trailing bytes read as zero."""
    return [bool(data[i // 8] >> (i % 8) & 1) if i // 8 < len(data) else False for i in range(count)]


_FLOAT32_MAX = 3.4028234663852886e38


def coerce(descriptor: CharacteristicDescriptor, value: Any) -> Value:
    """Validate a caller-supplied value against the characteristic's type."""
    vtype = descriptor.value_type
    if vtype is ValueType.ASCII:
        if isinstance(value, str):
            try:
                value = value.encode("ascii", errors="strict")
            except UnicodeEncodeError as e:
                raise InvalidArgumentError(f"CID #{descriptor.cid} expects ASCII text: {e}") from e
        if not isinstance(value, (bytes, bytearray)):
            raise InvalidArgumentError(f"CID #{descriptor.cid} expects bytes, got {type(value).__name__}")
        if len(value) > descriptor.value_size:
            raise InvalidArgumentError(
                f"CID #{descriptor.cid} holds {descriptor.value_size} bytes, got {len(value)}"
            )
        return bytes(value).ljust(descriptor.value_size, b"\x00")
    if isinstance(value, bool):
        value = int(value)
    if not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"CID #{descriptor.cid} expects a number, got {type(value).__name__}")
    if vtype is ValueType.FLOAT:
        try:
            value = float(value)
        except OverflowError as e:
            raise InvalidArgumentError(f"CID #{descriptor.cid} value too large for float32") from e
        if not math.isfinite(value) or abs(value) > _FLOAT32_MAX:
            raise InvalidArgumentError(f"CID #{descriptor.cid} rejects value {value!r} outside float32 range")
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidArgumentError(f"CID #{descriptor.cid} expects an integer, got {value!r}")
        value = int(value)
    low, high = _RANGES[vtype]
    if descriptor.register_kind.is_bit:
        # a bit area holds register_count bits and nothing above them
        high = min(high, (1 << descriptor.register_count) - 1)
    if not low <= value <= high:
        raise InvalidArgumentError(f"CID #{descriptor.cid} value {value} outside {low}..{high}")
    return value


def decode_wire(descriptor: CharacteristicDescriptor, data: bytes) -> Value:
    """Decode transport bytes for this characteristic into a Python value."""
    vtype = descriptor.value_type
    if descriptor.register_kind.is_bit:
        raw = data[: descriptor.value_size].ljust(descriptor.value_size, b"\x00")
        if vtype is ValueType.ASCII:
            return raw
        return int.from_bytes(raw, "little", signed=vtype is ValueType.I16)
    if vtype is ValueType.ASCII:
        return bytes(data[: descriptor.value_size]).ljust(descriptor.value_size, b"\x00")
    fmt = _FORMATS[vtype][0]
    width = struct.calcsize(fmt)
    if len(data) < width:
        raise ValueError(f"CID #{descriptor.cid} needs {width} bytes, transport returned {len(data)}")
    (value,) = struct.unpack(fmt, data[:width])
    if vtype is ValueType.U8 and value > 0xFF:
        raise ValueError(f"CID #{descriptor.cid} register value {value:#06x} does not fit U8")
    return value


def encode_wire(descriptor: CharacteristicDescriptor, value: Value) -> bytes:
    """Encode a coerced value into the bytes the transport writes."""
    vtype = descriptor.value_type
    count = descriptor.register_count
    if descriptor.register_kind.is_bit:
        if vtype is ValueType.ASCII:
            return bytes(value)[: (count + 7) // 8]
        bits = int(value) & ((1 << count) - 1)
        return bits.to_bytes((count + 7) // 8, "little")
    if vtype is ValueType.ASCII:
        return bytes(value)[: count * 2].ljust(count * 2, b"\x00")
    return struct.pack(_FORMATS[vtype][0], value).ljust(count * 2, b"\x00")


def to_storage(descriptor: CharacteristicDescriptor, value: Value) -> bytes:
    vtype = descriptor.value_type
    if vtype is ValueType.ASCII:
        return bytes(value)[: descriptor.value_size].ljust(descriptor.value_size, b"\x00")
    fmt = _FORMATS[vtype][1]
    return struct.pack(fmt, value).ljust(descriptor.value_size, b"\x00")[: descriptor.value_size]


def from_storage(descriptor: CharacteristicDescriptor, raw: bytes) -> Value:
    vtype = descriptor.value_type
    if vtype is ValueType.ASCII:
        return bytes(raw)
    fmt = _FORMATS[vtype][1]
    (value,) = struct.unpack(fmt, bytes(raw[: struct.calcsize(fmt)]))
    return value


def to_json(value: Value) -> int | float | str:
    """Render a value for a JSON reply; byte blobs become hex strings."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value
