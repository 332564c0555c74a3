#!/usr/bin/env python3
"""
Shuttle type registry and value model.

Holds:
- The closed token table (one byte per value kind or structural marker)
- Payload widths for fixed-width numerics
- Sentinel and wrapper types for values Python has no native form for
- The exception hierarchy shared by the codec, cipher and facade
"""

import struct
from enum import IntEnum
from types import MappingProxyType


# =============================
# CONFIGURATION
# =============================

DEFAULT_ENCODING = "utf-8"

# Digest field: String token + 32 hex chars + Null terminator
DIGEST_HEX_LENGTH = 32
DIGEST_FIELD_SIZE = 1 + DIGEST_HEX_LENGTH + 1

# Timestamps carry 55 bits of magnitude plus a sign bit
TIMESTAMP_PAYLOAD_BYTES = 7
TIMESTAMP_SIGN_BIT = 0x80
MAX_TIMESTAMP_MAGNITUDE = (1 << (TIMESTAMP_PAYLOAD_BYTES * 8 - 1)) - 1

# Length field of fixed-width arrays
ARRAY_LENGTH_BYTES = 8


# =============================
# TOKENS
# =============================

class Token(IntEnum):
    NULL = 0
    END = 1
    FLOAT32 = 2
    FLOAT64 = 3
    INT8 = 4
    INT16 = 5
    INT32 = 6
    UINT8 = 7
    UINT16 = 8
    UINT32 = 9
    BIGINT64 = 10
    BIGUINT64 = 11
    STRING = 12
    ARRAY = 13
    OBJECT = 14
    SET = 15
    MAP = 16
    DATE = 17
    INVALID_DATE = 18
    TRUE = 19
    FALSE = 20
    UNDEFINED = 21
    UINT8_ARRAY = 22
    UINT16_ARRAY = 23
    UINT32_ARRAY = 24


# Little-endian struct layouts of the fixed-width numeric kinds
NUMERIC_FORMATS = MappingProxyType({
    Token.FLOAT32: "<f",
    Token.FLOAT64: "<d",
    Token.INT8: "<b",
    Token.INT16: "<h",
    Token.INT32: "<i",
    Token.UINT8: "<B",
    Token.UINT16: "<H",
    Token.UINT32: "<I",
    Token.BIGINT64: "<q",
    Token.BIGUINT64: "<Q",
})

NUMERIC_WIDTHS = MappingProxyType({
    kind: struct.calcsize(fmt) for kind, fmt in NUMERIC_FORMATS.items()
})

# Array token -> numpy lane dtype (little-endian)
ARRAY_DTYPES = MappingProxyType({
    Token.UINT8_ARRAY: "<u1",
    Token.UINT16_ARRAY: "<u2",
    Token.UINT32_ARRAY: "<u4",
})


# =============================
# EXCEPTIONS
# =============================

class ShuttleError(Exception):
    """Base exception for serialization errors."""
    pass


class UnsupportedValueError(ShuttleError, TypeError):
    """Raised when a value has no wire representation."""
    pass


class UnknownTokenError(ShuttleError, ValueError):
    """Raised when a decoded tag byte is not in the registry."""
    pass


class TruncatedBufferError(ShuttleError, ValueError):
    """Raised when the buffer ends before a value is complete."""
    pass


class MalformedPayloadError(ShuttleError, ValueError):
    """Raised when known tags carry bytes that cannot form a value."""
    pass


class IntegrityError(ShuttleError):
    """Raised when the stored digest does not match the payload."""
    pass


class UnknownEncodingError(ShuttleError, LookupError):
    """Raised when the configured charset name is not a known codec."""
    pass


# =============================
# VALUE MODEL
# =============================

class Undefined:
    """The absent marker. Use the module-level ``UNDEFINED`` instance."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNDEFINED"

    def __bool__(self):
        return False

    def __reduce__(self):
        return (Undefined, ())


class InvalidTimestamp:
    """A timestamp that holds no instant. Use ``INVALID_TIMESTAMP``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "INVALID_TIMESTAMP"

    def __reduce__(self):
        return (InvalidTimestamp, ())


UNDEFINED = Undefined()
INVALID_TIMESTAMP = InvalidTimestamp()


class Int64(int):
    """Signed 64-bit integer, written with the BigInt64 token."""

    MIN = -(1 << 63)
    MAX = (1 << 63) - 1

    def __new__(cls, value=0):
        self = super().__new__(cls, value)
        if not cls.MIN <= self <= cls.MAX:
            raise ValueError(f"{cls.__name__} out of range: {int(self)}")
        return self

    def __repr__(self):
        return f"{type(self).__name__}({int(self)})"


class UInt64(Int64):
    """Unsigned 64-bit integer, written with the BigUint64 token."""

    MIN = 0
    MAX = (1 << 64) - 1


class ValueMap(dict):
    """
    A map whose keys may be any hashable value.

    Plain dicts with text keys travel as Object; a ValueMap always travels
    as Map so the key kinds survive the round trip.
    """

    def __repr__(self):
        return f"ValueMap({dict.__repr__(self)})"
