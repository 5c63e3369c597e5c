from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from skillmint.domain.models import AuditEvent, now_ms
from skillmint.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Audit rows never carry key material, rule text, caller queries or credentials.
_REDACTED_FRAGMENTS = ("credential", "authorization", "api_key", "secret", "token", "plaintext", "rules", "query", "dek", "kek")


def redact(metadata: dict[str, Any] | None) -> dict[str, Any]:
    return {
        key: "[REDACTED]" if any(fragment in key.lower() for fragment in _REDACTED_FRAGMENTS) else value
        for key, value in (metadata or {}).items()
    }


def get_request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")


async def record_event(
    *,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    actor_type: str = "api_key",
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    """Append one audit row in its own session.

    A failed write is logged and dropped so the calling request still
    completes.
    """
    event = AuditEvent(
        occurred_at=now_ms(),
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=redact(metadata),
        error_code=error_code,
    )
    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)
