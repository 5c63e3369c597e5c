from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from skillmint.core.errors import CryptoAuthFailure


IV_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32


def seal(key: bytes | bytearray, plaintext: bytes | bytearray) -> bytes:
    """Encrypt with AES-256-GCM into the stored layout iv(12) | tag(16) | ciphertext."""
    if len(key) != KEY_BYTES:
        raise ValueError("AES-256-GCM requires a 32-byte key")
    iv = os.urandom(IV_BYTES)
    # AESGCM appends the tag; move it in front of the ciphertext.
    ciphertext_with_tag = AESGCM(bytes(key)).encrypt(iv, bytes(plaintext), None)
    ciphertext = ciphertext_with_tag[:-TAG_BYTES]
    tag = ciphertext_with_tag[-TAG_BYTES:]
    return iv + tag + ciphertext


def unseal(key: bytes | bytearray, envelope: bytes) -> bytearray:
    """Reverse of seal; raises CryptoAuthFailure on any authentication failure."""
    if len(key) != KEY_BYTES:
        raise ValueError("AES-256-GCM requires a 32-byte key")
    if len(envelope) < IV_BYTES + TAG_BYTES:
        raise CryptoAuthFailure("Envelope is truncated")
    iv = envelope[:IV_BYTES]
    tag = envelope[IV_BYTES : IV_BYTES + TAG_BYTES]
    ciphertext = envelope[IV_BYTES + TAG_BYTES :]
    try:
        plaintext = AESGCM(bytes(key)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise CryptoAuthFailure() from exc
    # Hand back a mutable buffer so callers can wipe it.
    return bytearray(plaintext)
