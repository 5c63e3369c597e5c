from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.config import get_settings
from skillmint.core.errors import AdminRequired
from skillmint.domain.models import now_ms
from skillmint.persistence.db import get_session
from skillmint.persistence.repos import users as users_repo
from skillmint.services.audit import get_request_id, record_event
from skillmint.services.auth.api_keys import hash_api_key


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity used for ownership checks, tier gates and metering.
    user_id: str
    display_name: str
    tier: str
    role: str
    api_key_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _reject(request: Request, exc: HTTPException) -> HTTPException:
    # Only failures are audited; successful lookups stay off the write path.
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_event(
        actor_type="anonymous",
        actor_id=None,
        actor_role=None,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        request_id=get_request_id(request),
        metadata={"path": request.url.path, "method": request.method},
        error_code=detail.get("code"),
    )
    return exc


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    try:
        raw_key = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException as exc:
        raise await _reject(request, exc)

    found = await users_repo.get_key_with_user(db, hash_api_key(raw_key))
    if found is None:
        raise await _reject(request, _auth_error("Invalid API key"))
    api_key, user = found
    if api_key.revoked_at is not None:
        raise await _reject(request, _auth_error("API key revoked"))
    if api_key.expires_at is not None and api_key.expires_at <= now_ms():
        raise await _reject(request, _auth_error("API key expired"))
    if not user.is_active:
        raise await _reject(request, _auth_error("User is inactive"))

    return Principal(
        user_id=user.id,
        display_name=user.display_name,
        tier=user.tier,
        role=user.role,
        api_key_id=api_key.id,
    )


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise AdminRequired()
    return principal
