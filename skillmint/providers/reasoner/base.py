from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ReasonerReply:
    text: str
    inference_ms: int


class ReasonerProvider(Protocol):
    async def complete(self, *, system: str, prompt: str, max_tokens: int) -> ReasonerReply:
        ...
