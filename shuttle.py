#!/usr/bin/env python3
"""
Shuttle Serialization System

Implements:
- Tagged binary encoding of dynamic values
- Optional MD5 digest field, verified on decode
- Optional salt-keyed permutation cipher over the whole stream
- Command line encode / decode / info
"""

import sys
import json
import codecs
import base64
import argparse
from datetime import datetime
from typing import Any, Iterable, Optional

import numpy as np

import binary_encoder
import crypto_utils
from shuttle_types import (
    DEFAULT_ENCODING, DIGEST_FIELD_SIZE, INVALID_TIMESTAMP, UNDEFINED,
    IntegrityError, ShuttleError, Token, TruncatedBufferError,
    UnknownEncodingError, ValueMap,
)


class Shuttle:
    """Serializer bound to one set of salts, digest flag and charset."""

    def __init__(self,
                 salts: Optional[Iterable[int]] = None,
                 digest: bool = False,
                 encoding: str = DEFAULT_ENCODING,
                 max_depth: Optional[int] = None,
                 verbose: bool = False):
        try:
            codecs.lookup(encoding)
        except LookupError as e:
            raise UnknownEncodingError(f"Unknown text encoding: {encoding}") from e

        self.salts = list(salts or [])
        self.digest = digest
        self.encoding = encoding
        self.max_depth = max_depth
        self.verbose = verbose

    def log(self, message: str, level: str = "INFO"):
        if self.verbose:
            print(f"[{level}] {message}")

    # ============================================================
    # SERIALIZE
    # ============================================================

    def serialize(self, value: Any) -> bytes:

        encoded = binary_encoder.encode_item(value, self.encoding)
        self.log(f"Encoded {type(value).__name__}: {len(encoded):,} bytes")

        if self.digest:
            encoded = self._attach_digest(encoded)

        if self.salts:
            self.log(f"Encrypting with {len(self.salts)} salt(s)")

        return crypto_utils.encrypt_bytes(encoded, self.salts)

    def _attach_digest(self, encoded: bytes) -> bytes:
        hashed = crypto_utils.compute_digest(encoded)
        self.log(f"MD5: {hashed}")

        # The digest field is always ASCII, whatever the payload charset
        return binary_encoder.encode_string(hashed) + encoded

    # ============================================================
    # DESERIALIZE
    # ============================================================

    def deserialize(self, data: bytes) -> Any:

        decrypted = crypto_utils.decrypt_bytes(data, self.salts)

        if self.digest:
            decrypted = self._verify_digest(decrypted)

        cursor = binary_encoder.Cursor(
            decrypted,
            encoding=self.encoding,
            max_depth=self.max_depth
        )
        value = binary_encoder.decode_item(cursor)

        self.log(f"Decoded {type(value).__name__}: {cursor.position:,} bytes")
        return value

    def _verify_digest(self, decrypted: bytes) -> bytes:

        if len(decrypted) < DIGEST_FIELD_SIZE:
            raise TruncatedBufferError(
                f"Buffer too short for a digest field: {len(decrypted)} bytes"
            )

        field = decrypted[:DIGEST_FIELD_SIZE]
        encoded = decrypted[DIGEST_FIELD_SIZE:]

        if field[0] != Token.STRING or field[-1] != Token.NULL:
            raise IntegrityError("Malformed digest field")

        try:
            stored = binary_encoder.decode_string(binary_encoder.Cursor(field))
        except ShuttleError as e:
            raise IntegrityError(f"Malformed digest field: {e}") from e

        computed = crypto_utils.compute_digest(encoded)

        if computed != stored:
            self.log(f"MD5 mismatch: {stored} != {computed}", "ERROR")
            raise IntegrityError("Invalid hash")

        self.log("✓ MD5 verified")
        return encoded


# ============================================================
# MODULE API
# ============================================================

def serialize(value: Any,
              salts: Optional[Iterable[int]] = None,
              digest: bool = False,
              encoding: str = DEFAULT_ENCODING) -> bytes:
    return Shuttle(salts, digest, encoding).serialize(value)


def deserialize(data: bytes,
                salts: Optional[Iterable[int]] = None,
                digest: bool = False,
                encoding: str = DEFAULT_ENCODING,
                max_depth: Optional[int] = None) -> Any:
    return Shuttle(salts, digest, encoding, max_depth).deserialize(data)


# ============================================================
# JSON BRIDGE
# ============================================================

def to_jsonable(value: Any) -> Any:
    """Converts a decoded value into something json.dump accepts."""

    if value is UNDEFINED or value is INVALID_TIMESTAMP:
        return None

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, np.ndarray):
        return value.tolist()

    if isinstance(value, ValueMap):
        if all(isinstance(key, str) for key in value):
            return {key: to_jsonable(val) for key, val in value.items()}
        return [[to_jsonable(key), to_jsonable(val)] for key, val in value.items()]

    if isinstance(value, dict):
        return {key: to_jsonable(val) for key, val in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]

    if isinstance(value, int) and not isinstance(value, bool):
        return int(value)

    return value


def _read_input(path: str, as_base64: bool) -> bytes:
    with open(path, "rb") as f:
        data = f.read()

    if as_base64:
        text = data.decode("ascii").strip()
        data = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))

    return data


def _describe(value: Any) -> str:
    if isinstance(value, (list, tuple, set, dict)):
        return f"{type(value).__name__} ({len(value)} items)"
    if isinstance(value, np.ndarray):
        return f"{value.dtype} array ({value.size} lanes)"
    return type(value).__name__


# ============================================================
# CLI
# ============================================================

def main():

    parser = argparse.ArgumentParser(
        description="Shuttle - tagged binary serialization"
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_codec_options(sub):
        sub.add_argument("--salt", type=int, action="append", default=[])
        sub.add_argument("--digest", action="store_true")
        sub.add_argument("--base64", action="store_true")

    # Encode
    encode_parser = subparsers.add_parser("encode")
    encode_parser.add_argument("input")
    encode_parser.add_argument("--output", required=True)
    encode_parser.add_argument("--encoding", default=DEFAULT_ENCODING)
    encode_parser.add_argument("--quiet", action="store_true")
    add_codec_options(encode_parser)

    # Decode
    decode_parser = subparsers.add_parser("decode")
    decode_parser.add_argument("input")
    decode_parser.add_argument("--output", required=True)
    decode_parser.add_argument("--encoding", default=DEFAULT_ENCODING)
    decode_parser.add_argument("--max-depth", type=int)
    decode_parser.add_argument("--quiet", action="store_true")
    add_codec_options(decode_parser)

    # Info
    info_parser = subparsers.add_parser("info")
    info_parser.add_argument("input")
    info_parser.add_argument("--encoding", default=DEFAULT_ENCODING)
    add_codec_options(info_parser)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    try:

        shuttle = Shuttle(
            salts=args.salt,
            digest=args.digest,
            encoding=args.encoding,
            max_depth=getattr(args, "max_depth", None),
            verbose=not getattr(args, "quiet", False)
        )

        if args.command == "encode":
            with open(args.input, "r", encoding="utf-8") as f:
                document = json.load(f)

            data = shuttle.serialize(document)
            if args.base64:
                data = base64.urlsafe_b64encode(data).rstrip(b"=")

            with open(args.output, "wb") as f:
                f.write(data)
            shuttle.log(f"Written {len(data):,} bytes to {args.output}")

        elif args.command == "decode":
            value = shuttle.deserialize(_read_input(args.input, args.base64))

            with open(args.output, "w", encoding="utf-8") as f:
                json.dump(to_jsonable(value), f, ensure_ascii=False)
            shuttle.log(f"JSON saved to {args.output}")

        elif args.command == "info":
            data = _read_input(args.input, args.base64)
            value = shuttle.deserialize(data)

            print("\n" + "=" * 60)
            print("PAYLOAD INFORMATION")
            print("=" * 60)
            print(f"File: {args.input}")
            print(f"Size: {len(data):,} bytes")
            print(f"Salts: {len(args.salt)}")
            print(f"Digest: {'verified' if args.digest else 'not used'}")
            print(f"Top-level: {_describe(value)}")
            print("=" * 60 + "\n")

    except (OSError, ValueError, ShuttleError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
