from __future__ import annotations

from skillmint.services.crypto.kms.base import KmsProvider
from skillmint.services.crypto.kms.local import LocalKmsProvider


_provider: KmsProvider | None = None


def get_kms_provider() -> KmsProvider:
    # The KEK is process-global and immutable once loaded.
    global _provider
    if _provider is None:
        _provider = LocalKmsProvider()
    return _provider


def reset_kms_provider() -> None:
    # Tests swap KEK configuration between cases.
    global _provider
    _provider = None
