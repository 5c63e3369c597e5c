from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.apps.api.deps import Principal, get_db, require_admin
from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import ApiModel, RequestModel, SuccessEnvelope, success_response
from skillmint.apps.api.routes.packages import PackageResponse, to_package_response
from skillmint.core.errors import UserNotFound
from skillmint.persistence.repos import audit as audit_repo
from skillmint.persistence.repos import users as users_repo
from skillmint.services import hash_chain, metering
from skillmint.services import packages as packages_service
from skillmint.services.audit import get_request_id, record_event


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class PackageStatusRequest(RequestModel):
    status: Literal["active", "archived", "banned"]
    reason: str | None = Field(default=None, max_length=500)


class ChainVerificationResponse(ApiModel):
    package_id: str
    valid: bool
    entries: int
    broken_at: str | None


class SubscriptionProvisionRequest(RequestModel):
    user_id: str
    tier: Literal["pro", "epic", "legendary"]
    # Overrides the tier's configured monthly quota; 0 means unlimited.
    calls_limit: int | None = Field(default=None, ge=0)


class SubscriptionResponse(ApiModel):
    id: str
    user_id: str
    tier: str
    status: str
    calls_used: int
    calls_limit: int
    period_start: int
    period_end: int


class AuditEventResponse(ApiModel):
    id: int
    occurred_at: int
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata: dict[str, Any] | None
    error_code: str | None


@router.patch("/packages/{package_id}/status", response_model=SuccessEnvelope[PackageResponse])
async def set_package_status(
    package_id: str,
    request: Request,
    payload: PackageStatusRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package, previous = await packages_service.set_status(
        db, package_id, status=payload.status, is_admin=principal.is_admin
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="package.status_changed",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=get_request_id(request),
        metadata={"from": previous, "to": package.status, "reason": payload.reason},
    )
    return success_response(request=request, data=to_package_response(package))


@router.get("/audit-verify/{package_id}", response_model=SuccessEnvelope[ChainVerificationResponse])
async def verify_invocation_chain(
    package_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await packages_service.require_package(db, package_id)
    report = await hash_chain.verify_chain(db, package_id)
    data = ChainVerificationResponse(
        package_id=package_id, valid=report.valid, entries=report.entries, broken_at=report.broken_at
    )
    return success_response(request=request, data=data)


@router.post("/subscriptions", status_code=201, response_model=SuccessEnvelope[SubscriptionResponse])
async def provision_subscription(
    request: Request,
    payload: SubscriptionProvisionRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await users_repo.get_user(db, payload.user_id) is None:
        raise UserNotFound()
    subscription = await metering.open_subscription(
        db, user_id=payload.user_id, tier=payload.tier, calls_limit=payload.calls_limit
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="subscription.opened",
        outcome="success",
        resource_type="subscription",
        resource_id=subscription.id,
        request_id=get_request_id(request),
        metadata={"user_id": payload.user_id, "tier": payload.tier, "calls_limit": subscription.calls_limit},
    )
    data = SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        tier=subscription.tier,
        status=subscription.status,
        calls_used=subscription.calls_used,
        calls_limit=subscription.calls_limit,
        period_start=subscription.period_start,
        period_end=subscription.period_end,
    )
    return success_response(request=request, data=data)


@router.get("/audit-events", response_model=SuccessEnvelope[list[AuditEventResponse]])
async def list_audit_events(
    request: Request,
    event_type: str | None = Query(default=None, alias="eventType"),
    resource_type: str | None = Query(default=None, alias="resourceType"),
    resource_id: str | None = Query(default=None, alias="resourceId"),
    actor_id: str | None = Query(default=None, alias="actorId"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await audit_repo.list_events(
        db,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        actor_id=actor_id,
        offset=offset,
        limit=limit,
    )
    data = [
        AuditEventResponse(
            id=event.id,
            occurred_at=event.occurred_at,
            actor_type=event.actor_type,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            event_type=event.event_type,
            outcome=event.outcome,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            request_id=event.request_id,
            metadata=event.metadata_json,
            error_code=event.error_code,
        )
        for event in events
    ]
    return success_response(request=request, data=data)
