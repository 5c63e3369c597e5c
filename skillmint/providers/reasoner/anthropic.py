from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from skillmint.core.config import get_settings
from skillmint.core.errors import ReasonerUnavailableError
from skillmint.providers.reasoner.base import ReasonerReply
from skillmint.services.resilience import reasoner_retry_policy, retry_async


logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"


def _retryable(exc: Exception) -> bool:
    # Retry connection-level failures only; a timeout already spent the budget.
    return isinstance(exc, httpx.TransportError) and not isinstance(exc, httpx.TimeoutException)


class AnthropicReasoner:
    """Calls the Messages API with a caller- or platform-supplied credential."""

    def __init__(self, credential: str, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = get_settings()
        self._credential = credential
        self._transport = transport

    async def complete(self, *, system: str, prompt: str, max_tokens: int) -> ReasonerReply:
        budget_s = self._settings.reasoner_timeout_ms / 1000.0
        payload = {
            "model": self._settings.reasoner_model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self._credential,
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        url = f"{self._settings.reasoner_base_url.rstrip('/')}/v1/messages"
        start = time.monotonic()

        async with httpx.AsyncClient(timeout=budget_s, transport=self._transport) as client:

            async def _call() -> httpx.Response:
                return await client.post(url, json=payload, headers=headers)

            try:
                response = await asyncio.wait_for(
                    retry_async(
                        _call,
                        policy=reasoner_retry_policy(),
                        retryable=_retryable,
                        operation="reasoner",
                    ),
                    timeout=budget_s,
                )
            except (httpx.HTTPError, TimeoutError) as exc:
                logger.warning("reasoner_call_failed error=%s", type(exc).__name__)
                raise ReasonerUnavailableError(retry_after_s=5) from exc

        inference_ms = int((time.monotonic() - start) * 1000)
        if response.status_code >= 400:
            # Non-2xx responses are surfaced without retry.
            logger.warning("reasoner_call_rejected status=%s", response.status_code)
            raise ReasonerUnavailableError(
                f"Reasoning service returned {response.status_code}", retry_after_s=5
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ReasonerUnavailableError("Reasoning service returned an unreadable body", retry_after_s=5) from exc
        return ReasonerReply(text=_first_text(body), inference_ms=inference_ms)


def _first_text(body: dict[str, Any]) -> str:
    for block in body.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            return str(block.get("text", ""))
    return "Skill processed the request."
