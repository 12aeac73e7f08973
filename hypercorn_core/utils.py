"""
hypercorn_core.utils
--------------------
Small helpers for key encodings, and timestamps.
Feed keys travel as base64 inside messages and as hex on disk.
"""

from __future__ import annotations
import base64, binascii, time
from typing import Any

KEY_SIZE = 32


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")

def b64d(s: str) -> bytes:
    # validate=True rejects stray characters instead of silently dropping them
    return base64.b64decode(s.encode("ascii"), validate=True)

def key_b64(key: bytes) -> str:
    return b64e(key)

def key_hex(key: bytes) -> str:
    return key.hex()

def decode_key(value: str) -> bytes:
    """Decode a base64 feed key, raising ValueError on anything malformed."""
    try:
        raw = b64d(value)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64 key: {e}") from e
    if len(raw) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw

def is_key(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray)) and len(value) == KEY_SIZE

def now_unix() -> float:
    return time.time()
