from __future__ import annotations

import base64
import binascii
import hashlib


def decode_key_material(value: str) -> bytes:
    """Decode hex or base64 key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def b64encode_bytes(value: bytes | bytearray) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


def sha256_hex(value: bytes | bytearray | str) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def zeroize(buffer: bytearray | memoryview) -> None:
    # Overwrite in place; slicing assignment keeps the same allocation.
    buffer[:] = bytes(len(buffer))
