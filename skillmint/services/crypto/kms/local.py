from __future__ import annotations

import logging
import os
from typing import Final

from skillmint.core.config import get_settings
from skillmint.core.errors import ConfigurationError
from skillmint.services.crypto.aead import KEY_BYTES, seal, unseal
from skillmint.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


logger = logging.getLogger(__name__)


class LocalKmsProvider:
    """Wraps DEKs under a process-wide KEK held in memory.

    The KEK is resolved once at construction and never changes for the life
    of the process.
    """

    provider: Final[str] = "local_kms"

    def __init__(self, kek: bytes | None = None) -> None:
        self._kek = kek if kek is not None else _load_kek()

    def wrap_key(self, dek: bytes | bytearray) -> str:
        return b64encode_bytes(seal(self._kek, dek))

    def unwrap_key(self, wrapped_dek: str) -> bytearray:
        return unseal(self._kek, b64decode_str(wrapped_dek))


def _load_kek() -> bytes:
    settings = get_settings()
    if settings.kek:
        try:
            material = decode_key_material(settings.kek)
        except ValueError as exc:
            raise ConfigurationError("KEK must be 64 hex characters or base64 of 32 bytes") from exc
        if len(material) != KEY_BYTES:
            raise ConfigurationError("KEK must decode to exactly 32 bytes")
        return material
    if settings.is_production():
        raise ConfigurationError("KEK is required in production")
    # Ephemeral development key: anything encrypted with it is lost on restart.
    logger.warning("kek_missing_using_ephemeral_key environment=%s", settings.environment)
    return os.urandom(KEY_BYTES)
