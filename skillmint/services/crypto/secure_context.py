from __future__ import annotations

import inspect
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from skillmint.services.crypto.utils import zeroize


T = TypeVar("T")


class SecureScope:
    """Holds key material and any derived plaintext buffers for one operation.

    Everything registered with the scope is overwritten with zeros when the
    scope closes, whatever the exit path.
    """

    def __init__(self, key: bytearray) -> None:
        self.key = key
        self._buffers: list[bytearray] = [key]
        self.closed = False

    def adopt(self, buffer: bytearray) -> bytearray:
        if self.closed:
            raise RuntimeError("secure scope already closed")
        self._buffers.append(buffer)
        return buffer

    def wipe(self) -> None:
        for buffer in self._buffers:
            zeroize(buffer)
        self._buffers.clear()
        self.closed = True


@asynccontextmanager
async def secure_context(key_factory: Callable[[], Awaitable[bytearray] | bytearray]) -> AsyncIterator[SecureScope]:
    key = key_factory()
    if inspect.isawaitable(key):
        key = await key
    if not isinstance(key, bytearray):
        raise TypeError("key_factory must return a bytearray")
    scope = SecureScope(key)
    try:
        yield scope
    finally:
        # Runs on return, exception and task cancellation alike.
        scope.wipe()


async def with_secure_context(
    key_factory: Callable[[], Awaitable[bytearray] | bytearray],
    body: Callable[[SecureScope], Awaitable[T]],
) -> T:
    async with secure_context(key_factory) as scope:
        return await body(scope)
