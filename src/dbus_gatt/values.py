"""
Tagged attribute values and their wire encoding.

Accessors return plain Python values; BlueZ only deals in byte arrays
(D-Bus type ``ay``). A value is tagged by its Python type and encoded
little-endian, which is the byte order GATT uses for numeric values.
"""

import struct
from enum import Enum
from typing import Union

from .exceptions import ConfigurationError

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

AttributeValue = Union[str, int, bool, bytes, bytearray, memoryview, list, tuple]


class ValueType(Enum):
    STRING = "string"
    INT32 = "int32"
    BOOLEAN = "boolean"
    BYTES = "bytes"


def value_type(value: AttributeValue) -> ValueType:
    """Return the tag for a value, raising TypeError for unsupported ones."""
    # bool is a subclass of int, test it first
    if isinstance(value, bool):
        return ValueType.BOOLEAN
    if isinstance(value, int):
        if not INT32_MIN <= value <= INT32_MAX:
            raise TypeError(f"Integer {value} does not fit in a signed 32-bit value")
        return ValueType.INT32
    if isinstance(value, str):
        return ValueType.STRING
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueType.BYTES
    if isinstance(value, (list, tuple)):
        if all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 0xFF for b in value):
            return ValueType.BYTES
        raise TypeError("Byte sequences must only contain integers in 0..255")
    raise TypeError(f"Unsupported attribute value type: {type(value).__name__}")


def encode_value(value: AttributeValue) -> bytes:
    """Encode a tagged value into the bytes sent over D-Bus."""
    tag = value_type(value)
    if tag is ValueType.BOOLEAN:
        return b"\x01" if value else b"\x00"
    if tag is ValueType.INT32:
        return struct.pack("<i", value)
    if tag is ValueType.STRING:
        return value.encode("utf-8")
    return bytes(value)


def checked_encode(value: AttributeValue, what: str) -> bytes:
    """Encode a value given at construction time, as a ConfigurationError on failure."""
    try:
        return encode_value(value)
    except TypeError as e:
        raise ConfigurationError(f"{what}: {e}") from e
