from __future__ import annotations

from typing import Any

from skillmint.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {"example": _error_example(code=code, message=message, details=details)}
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _response(
        "Forbidden",
        "TIER_INSUFFICIENT",
        "This skill requires the epic tier",
        {"requiredTier": 2, "requiredTierName": "epic", "currentTier": "free"},
    ),
    404: _response("Not found", "PACKAGE_NOT_FOUND", "Package not found"),
    409: _response(
        "Conflict",
        "EDITION_LIMIT_REACHED",
        "All 10 editions of this legendary skill have been minted",
        {"rarity": "legendary", "maxEditions": 10},
    ),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _response(
        "Dependency unavailable",
        "REASONER_UNAVAILABLE",
        "Reasoning service unavailable, retry later",
        {"retry_after_s": 5},
    ),
}
