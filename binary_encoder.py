#!/usr/bin/env python3
"""
Binary Encoder for Shuttle

Features:
- One-byte token per value kind, followed by its payload
- Little-endian fixed-width numerics
- Null-terminated text in a configurable charset
- End-terminated containers (array, object, set, map)
- Length-prefixed unsigned lane arrays (8/16/32 bit)
- Cursor-driven recursive decoding
"""

import struct
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, Optional

import numpy as np

from shuttle_types import (
    ARRAY_DTYPES, ARRAY_LENGTH_BYTES, DEFAULT_ENCODING, INVALID_TIMESTAMP,
    MAX_TIMESTAMP_MAGNITUDE, NUMERIC_FORMATS, NUMERIC_WIDTHS,
    TIMESTAMP_PAYLOAD_BYTES, TIMESTAMP_SIGN_BIT, UNDEFINED, Int64,
    InvalidTimestamp, MalformedPayloadError, Token, TruncatedBufferError,
    UInt64, Undefined, UnknownTokenError, UnsupportedValueError, ValueMap,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MILLISECOND = timedelta(milliseconds=1)


# =============================
# CURSOR
# =============================

class Cursor:
    """
    Read position over a byte buffer.

    Every decode step advances the cursor by exactly the bytes it consumed.
    """

    def __init__(self, buffer, position: int = 0,
                 encoding: str = DEFAULT_ENCODING,
                 max_depth: Optional[int] = None):
        self.buffer = bytes(buffer)
        if not 0 <= position <= len(self.buffer):
            raise ValueError(
                f"Cursor position {position} outside buffer of {len(self.buffer)} bytes"
            )
        self.position = position
        self.encoding = encoding
        self.max_depth = max_depth
        self.depth = 0

    @property
    def remaining(self) -> int:
        return len(self.buffer) - self.position

    def exhausted(self) -> bool:
        return self.position >= len(self.buffer)

    def peek(self) -> int:
        if self.exhausted():
            raise TruncatedBufferError(
                f"Unexpected end of buffer at offset {self.position}"
            )
        return self.buffer[self.position]

    def advance(self, count: int = 1) -> None:
        if count > self.remaining:
            raise TruncatedBufferError(
                f"Cannot advance {count} bytes at offset {self.position}: "
                f"only {self.remaining} left"
            )
        self.position += count

    def read(self, count: int) -> bytes:
        start = self.position
        self.advance(count)
        return self.buffer[start:self.position]

    def __repr__(self):
        return f"Cursor(position={self.position}, length={len(self.buffer)})"


# =============================
# NUMBERS
# =============================

def encode_number(value, kind: Token = Token.FLOAT64) -> bytes:
    """
    Encodes a number with an explicit fixed-width kind.

    Generic numbers always go through Float64; the narrower kinds are only
    produced when asked for.
    """
    fmt = NUMERIC_FORMATS.get(kind)
    if fmt is None:
        raise UnsupportedValueError(f"Not a numeric token: {kind!r}")

    try:
        return bytes([kind]) + struct.pack(fmt, value)
    except (struct.error, OverflowError) as e:
        raise UnsupportedValueError(
            f"{value!r} does not fit {Token(kind).name}: {e}"
        ) from e


def decode_number(cursor: Cursor, kind: Token = Token.FLOAT64):
    cursor.advance(1)
    payload = cursor.read(NUMERIC_WIDTHS[kind])
    return struct.unpack(NUMERIC_FORMATS[kind], payload)[0]


def _encode_float(value, encoding: str) -> bytes:
    try:
        number = float(value)
    except OverflowError as e:
        raise UnsupportedValueError(
            f"Integer too large for a double: {value}"
        ) from e
    return encode_number(number, Token.FLOAT64)


def _encode_bigint(value: Int64, encoding: str) -> bytes:
    return encode_number(int(value), Token.BIGINT64)


def _encode_biguint(value: UInt64, encoding: str) -> bytes:
    return encode_number(int(value), Token.BIGUINT64)


def _decode_bigint(cursor: Cursor) -> Int64:
    return Int64(decode_number(cursor, Token.BIGINT64))


def _decode_biguint(cursor: Cursor) -> UInt64:
    return UInt64(decode_number(cursor, Token.BIGUINT64))


# =============================
# TEXT
# =============================

def encode_string(text: str, encoding: str = DEFAULT_ENCODING) -> bytes:
    """
    Encodes text as token + charset bytes + NUL.

    Text with an embedded NUL byte comes back cut at that byte.
    """
    try:
        body = text.encode(encoding)
    except UnicodeEncodeError as e:
        raise UnsupportedValueError(
            f"Text not representable in {encoding}: {e}"
        ) from e
    except LookupError as e:
        raise UnsupportedValueError(f"Unknown text encoding: {encoding}") from e
    return bytes([Token.STRING]) + body + bytes([Token.NULL])


def decode_string(cursor: Cursor) -> str:
    cursor.advance(1)
    end = cursor.buffer.find(b"\x00", cursor.position)
    if end < 0:
        raise TruncatedBufferError(
            f"Unterminated string at offset {cursor.position - 1}"
        )

    body = cursor.read(end - cursor.position)
    cursor.advance(1)

    try:
        return body.decode(cursor.encoding)
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(
            f"Invalid {cursor.encoding} text: {e}"
        ) from e
    except LookupError as e:
        raise MalformedPayloadError(
            f"Unknown text encoding: {cursor.encoding}"
        ) from e


# =============================
# TIMESTAMPS
# =============================

def _to_epoch_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // ONE_MILLISECOND


def encode_date(moment, encoding: str = DEFAULT_ENCODING) -> bytes:
    """
    Encodes a timestamp as token + 7 bytes.

    The millisecond magnitude is stored big-endian in the low 55 bits and
    the sign in the top bit of the first payload byte.
    """
    if moment is INVALID_TIMESTAMP:
        return bytes([Token.INVALID_DATE])

    millis = _to_epoch_millis(moment)
    magnitude = abs(millis)

    if magnitude > MAX_TIMESTAMP_MAGNITUDE:
        raise UnsupportedValueError(f"Timestamp out of range: {moment!r}")

    payload = bytearray(magnitude.to_bytes(TIMESTAMP_PAYLOAD_BYTES, "big"))
    if millis < 0:
        payload[0] |= TIMESTAMP_SIGN_BIT

    return bytes([Token.DATE]) + bytes(payload)


def decode_date(cursor: Cursor) -> datetime:
    cursor.advance(1)
    payload = bytearray(cursor.read(TIMESTAMP_PAYLOAD_BYTES))

    negative = bool(payload[0] & TIMESTAMP_SIGN_BIT)
    payload[0] &= ~TIMESTAMP_SIGN_BIT & 0xFF
    millis = int.from_bytes(payload, "big")

    try:
        return EPOCH + timedelta(milliseconds=-millis if negative else millis)
    except OverflowError as e:
        raise MalformedPayloadError(
            f"Timestamp out of range: {'-' if negative else ''}{millis} ms"
        ) from e


def _encode_invalid_date(value: InvalidTimestamp, encoding: str) -> bytes:
    return bytes([Token.INVALID_DATE])


# =============================
# CONTAINERS
# =============================

def _iter_members(cursor: Cursor) -> Iterator[None]:
    """
    Steps over a container's start token and yields once per member.

    Stops on the End token and consumes it. Reaching the end of the buffer
    first is a truncation.
    """
    start = cursor.position
    cursor.advance(1)

    cursor.depth += 1
    if cursor.max_depth is not None and cursor.depth > cursor.max_depth:
        raise MalformedPayloadError(
            f"Nesting deeper than {cursor.max_depth} at offset {start}"
        )

    while True:
        if cursor.exhausted():
            raise TruncatedBufferError(
                f"Container at offset {start} is missing its End token"
            )
        if cursor.buffer[cursor.position] == Token.END:
            break
        yield

    cursor.advance(1)
    cursor.depth -= 1


def _hashable(value):
    # Set members and map keys decode to mutable containers; freeze them.
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, set):
        return frozenset(value)
    return value


def encode_array(items, encoding: str = DEFAULT_ENCODING) -> bytes:
    out = bytearray([Token.ARRAY])
    for item in items:
        out += encode_item(item, encoding)
    out.append(Token.END)
    return bytes(out)


def decode_array(cursor: Cursor) -> list:
    array = []
    for _ in _iter_members(cursor):
        array.append(decode_item(cursor))
    return array


def encode_object(obj: Dict[str, Any], encoding: str = DEFAULT_ENCODING) -> bytes:
    out = bytearray([Token.OBJECT])
    for key, value in obj.items():
        out += encode_string(key, encoding)
        out += encode_item(value, encoding)
    out.append(Token.END)
    return bytes(out)


def decode_object(cursor: Cursor) -> Dict[str, Any]:
    obj = {}
    for _ in _iter_members(cursor):
        if cursor.peek() != Token.STRING:
            raise MalformedPayloadError(
                f"Object key at offset {cursor.position} is not a string"
            )
        key = decode_string(cursor)
        obj[key] = decode_item(cursor)
    return obj


def encode_set(members, encoding: str = DEFAULT_ENCODING) -> bytes:
    out = bytearray([Token.SET])
    for member in members:
        out += encode_item(member, encoding)
    out.append(Token.END)
    return bytes(out)


def decode_set(cursor: Cursor) -> set:
    members = set()
    for _ in _iter_members(cursor):
        offset = cursor.position
        member = _hashable(decode_item(cursor))
        try:
            members.add(member)
        except TypeError as e:
            raise MalformedPayloadError(
                f"Set member at offset {offset} is unhashable"
            ) from e
    return members


def encode_map(mapping, encoding: str = DEFAULT_ENCODING) -> bytes:
    out = bytearray([Token.MAP])
    for key, value in mapping.items():
        out += encode_item(key, encoding)
        out += encode_item(value, encoding)
    out.append(Token.END)
    return bytes(out)


def decode_map(cursor: Cursor) -> ValueMap:
    mapping = ValueMap()
    for _ in _iter_members(cursor):
        offset = cursor.position
        key = _hashable(decode_item(cursor))
        value = decode_item(cursor)
        try:
            mapping[key] = value
        except TypeError as e:
            raise MalformedPayloadError(
                f"Map key at offset {offset} is unhashable"
            ) from e
    return mapping


def _encode_dict(obj: dict, encoding: str) -> bytes:
    if all(isinstance(key, str) for key in obj):
        return encode_object(obj, encoding)
    return encode_map(obj, encoding)


# =============================
# FIXED-WIDTH ARRAYS
# =============================

# Lane width in bytes -> array token
_LANE_TOKENS = {
    1: Token.UINT8_ARRAY,
    2: Token.UINT16_ARRAY,
    4: Token.UINT32_ARRAY,
}


def encode_uint_array(array, encoding: str = DEFAULT_ENCODING) -> bytes:
    """
    Encodes an unsigned lane array as token + 8-byte byte length + raw bytes.

    Lanes are flattened little-endian, so the length field always counts
    bytes, never elements.
    """
    if isinstance(array, (bytes, bytearray, memoryview)):
        array = np.frombuffer(bytes(array), dtype=np.uint8)

    if array.ndim != 1:
        raise UnsupportedValueError(
            f"Only one-dimensional arrays are supported, got {array.ndim} dims"
        )

    kind = _LANE_TOKENS.get(array.dtype.itemsize)
    if array.dtype.kind != "u" or kind is None:
        raise UnsupportedValueError(f"Unsupported array dtype: {array.dtype}")

    raw = array.astype(ARRAY_DTYPES[kind], copy=False).tobytes()

    return (
        bytes([kind])
        + struct.pack("<Q", len(raw))
        + raw
    )


def decode_uint_array(cursor: Cursor) -> np.ndarray:
    kind = Token(cursor.peek())
    cursor.advance(1)

    (length,) = struct.unpack("<Q", cursor.read(ARRAY_LENGTH_BYTES))
    if length > cursor.remaining:
        raise TruncatedBufferError(
            f"Array declares {length} bytes, only {cursor.remaining} left"
        )

    dtype = np.dtype(ARRAY_DTYPES[kind])
    if length % dtype.itemsize:
        raise MalformedPayloadError(
            f"Array byte length {length} is not a multiple of {dtype.itemsize}"
        )

    raw = cursor.read(length)
    return np.frombuffer(raw, dtype=dtype).astype(dtype.newbyteorder("="))


# =============================
# DISPATCH
# =============================

def _encode_null(value, encoding: str) -> bytes:
    return bytes([Token.NULL])


def _encode_undefined(value, encoding: str) -> bytes:
    return bytes([Token.UNDEFINED])


def _encode_bool(value: bool, encoding: str) -> bytes:
    return bytes([Token.TRUE if value else Token.FALSE])


def _constant(result, consumed: int = 1) -> Callable[[Cursor], Any]:
    def decode(cursor: Cursor):
        cursor.advance(consumed)
        return result
    return decode


def _numeric(kind: Token) -> Callable[[Cursor], Any]:
    def decode(cursor: Cursor):
        return decode_number(cursor, kind)
    return decode


_ENCODERS: Dict[type, Callable[[Any, str], bytes]] = {
    type(None): _encode_null,
    Undefined: _encode_undefined,
    bool: _encode_bool,
    int: _encode_float,
    float: _encode_float,
    Int64: _encode_bigint,
    UInt64: _encode_biguint,
    str: encode_string,
    list: encode_array,
    tuple: encode_array,
    dict: _encode_dict,
    ValueMap: encode_map,
    set: encode_set,
    frozenset: encode_set,
    datetime: encode_date,
    InvalidTimestamp: _encode_invalid_date,
    bytes: encode_uint_array,
    bytearray: encode_uint_array,
    memoryview: encode_uint_array,
    np.ndarray: encode_uint_array,
}

_DECODERS: Dict[int, Callable[[Cursor], Any]] = {
    Token.NULL: _constant(None),
    Token.UNDEFINED: _constant(UNDEFINED),
    Token.TRUE: _constant(True),
    Token.FALSE: _constant(False),
    Token.INVALID_DATE: _constant(INVALID_TIMESTAMP),
    Token.FLOAT32: _numeric(Token.FLOAT32),
    Token.FLOAT64: _numeric(Token.FLOAT64),
    Token.INT8: _numeric(Token.INT8),
    Token.INT16: _numeric(Token.INT16),
    Token.INT32: _numeric(Token.INT32),
    Token.UINT8: _numeric(Token.UINT8),
    Token.UINT16: _numeric(Token.UINT16),
    Token.UINT32: _numeric(Token.UINT32),
    Token.BIGINT64: _decode_bigint,
    Token.BIGUINT64: _decode_biguint,
    Token.STRING: decode_string,
    Token.ARRAY: decode_array,
    Token.OBJECT: decode_object,
    Token.SET: decode_set,
    Token.MAP: decode_map,
    Token.DATE: decode_date,
    Token.UINT8_ARRAY: decode_uint_array,
    Token.UINT16_ARRAY: decode_uint_array,
    Token.UINT32_ARRAY: decode_uint_array,
}


def _find_encoder(value) -> Callable[[Any, str], bytes]:
    encoder = _ENCODERS.get(type(value))
    if encoder is not None:
        return encoder

    # Subclasses (OrderedDict, numpy float64, aware datetime types...)
    for base in type(value).__mro__[1:]:
        encoder = _ENCODERS.get(base)
        if encoder is not None:
            return encoder

    raise UnsupportedValueError(
        f"Unsupported data type: {type(value).__name__}"
    )


def encode_item(value, encoding: str = DEFAULT_ENCODING) -> bytes:
    """
    Encodes any supported value, recursing into containers.
    """
    return _find_encoder(value)(value, encoding)


def decode_item(cursor: Cursor):
    """
    Decodes the value starting at the cursor and advances past it.
    """
    token = cursor.peek()
    decoder = _DECODERS.get(token)

    if decoder is None:
        raise UnknownTokenError(
            f"Unknown token {token} at offset {cursor.position}"
        )

    return decoder(cursor)
