from __future__ import annotations

import os

from skillmint.services.crypto.aead import KEY_BYTES, seal, unseal
from skillmint.services.crypto.kms import get_kms_provider


def generate_dek() -> bytearray:
    # Fresh 256-bit key per package, held in a wipeable buffer.
    return bytearray(os.urandom(KEY_BYTES))


def wrap_dek(dek: bytes | bytearray) -> str:
    return get_kms_provider().wrap_key(dek)


def unwrap_dek(wrapped_dek: str) -> bytearray:
    return get_kms_provider().unwrap_key(wrapped_dek)


def encrypt_knowledge(plaintext: bytes | bytearray, dek: bytes | bytearray) -> bytes:
    return seal(dek, plaintext)


def decrypt_knowledge(envelope: bytes, dek: bytes | bytearray) -> bytearray:
    return unseal(dek, envelope)
