from __future__ import annotations

from typing import Protocol


class KmsProvider(Protocol):
    provider: str

    def wrap_key(self, dek: bytes | bytearray) -> str:
        ...

    def unwrap_key(self, wrapped_dek: str) -> bytearray:
        ...
