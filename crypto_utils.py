#!/usr/bin/env python3

"""
Crypto Utilities for Shuttle

Functions for the salt-keyed permutation cipher and the payload digest.

The cipher is a reversible obfuscation layer, not encryption: anyone who
knows the salts can undo it.
"""


import random
from typing import Iterable, List, Sequence

from cryptography.hazmat.primitives import hashes


# =============================
# BIT ROTATION
# =============================

def rotate_right(data: bytes) -> bytes:
    """
    Rotates the whole byte sequence right by one bit.

    Bit 0 of the last byte wraps around to bit 7 of the first byte.
    """
    if not data:
        return b""

    width = len(data) * 8
    value = int.from_bytes(data, "big")
    value = (value >> 1) | ((value & 1) << (width - 1))
    return value.to_bytes(len(data), "big")


def rotate_left(data: bytes) -> bytes:
    """
    Rotates the whole byte sequence left by one bit.

    Bit 7 of the first byte wraps around to bit 0 of the last byte.
    """
    if not data:
        return b""

    width = len(data) * 8
    value = int.from_bytes(data, "big")
    value = ((value << 1) & ((1 << width) - 1)) | (value >> (width - 1))
    return value.to_bytes(len(data), "big")


# =============================
# PERMUTATION
# =============================

def shuffled_indexes(length: int, salt: int) -> List[int]:
    if isinstance(salt, bool) or not isinstance(salt, int):
        raise TypeError(f"Salt must be an integer, got {type(salt).__name__}")

    indexes = list(range(length))
    random.Random(salt).shuffle(indexes)
    return indexes


def _encrypt_round(data: bytes, salt: int) -> bytes:
    indexes = shuffled_indexes(len(data), salt)
    gathered = bytes(data[i] for i in indexes)
    return rotate_right(gathered)


def _decrypt_round(data: bytes, salt: int) -> bytes:
    indexes = shuffled_indexes(len(data), salt)
    rotated = rotate_left(data)

    scattered = bytearray(len(data))
    for position, index in enumerate(indexes):
        scattered[index] = rotated[position]
    return bytes(scattered)


# =============================
# ENCRYPT
# =============================

def encrypt_bytes(data: Iterable[int], salts: Sequence[int] = ()) -> bytes:
    """
    Applies one permutation round per salt, first salt innermost.

    With no salts the data comes back unchanged as bytes.
    """
    result = bytes(data)
    for salt in salts:
        result = _encrypt_round(result, salt)
    return result


# =============================
# DECRYPT
# =============================

def decrypt_bytes(data: Iterable[int], salts: Sequence[int] = ()) -> bytes:
    """
    Undoes encrypt_bytes: rounds run with the salts in reverse order.
    """
    result = bytes(data)
    for salt in reversed(list(salts)):
        result = _decrypt_round(result, salt)
    return result


# =============================
# DIGEST
# =============================

def compute_digest(payload: bytes) -> str:
    """
    MD5 of the payload rendered as 32 lowercase hex characters.

    Each byte is read as the character with the same code point and the
    resulting text is hashed as UTF-8.
    """
    text = bytes(payload).decode("latin-1")

    digest = hashes.Hash(hashes.MD5())
    digest.update(text.encode("utf-8"))
    return digest.finalize().hex()
