from __future__ import annotations

from skillmint.providers.reasoner.anthropic import AnthropicReasoner
from skillmint.providers.reasoner.base import ReasonerProvider


def get_reasoner(credential: str) -> ReasonerProvider:
    return AnthropicReasoner(credential)
