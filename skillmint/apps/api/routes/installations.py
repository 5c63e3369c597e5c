from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.apps.api.deps import Principal, get_current_principal, get_db
from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import ApiModel, RequestModel, SuccessEnvelope, success_response
from skillmint.apps.api.routes.mints import RoyaltyEntryResponse, to_royalty_response
from skillmint.domain.models import Installation
from skillmint.persistence.repos import installations as installations_repo
from skillmint.services import admission
from skillmint.services.audit import get_request_id, record_event


router = APIRouter(prefix="/installations", tags=["installations"], responses=DEFAULT_ERROR_RESPONSES)


class InstallationCreateRequest(RequestModel):
    # Slug or internal package id.
    package_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1, max_length=200)
    enabled: bool = True
    configuration: dict[str, Any] | None = None


class InstallationResponse(ApiModel):
    id: str
    package_id: str
    package_version: str
    user_id: str
    agent_id: str
    status: str
    enabled: bool
    configuration: dict[str, Any] | None
    installed_at: int
    uninstalled_at: int | None


class InstallationCreatedResponse(InstallationResponse):
    royalty: RoyaltyEntryResponse | None = None


def _to_response(installation: Installation) -> InstallationResponse:
    return InstallationResponse(
        id=installation.id,
        package_id=installation.package_id,
        package_version=installation.package_version,
        user_id=installation.user_id,
        agent_id=installation.agent_id,
        status=installation.status,
        enabled=installation.enabled,
        configuration=installation.configuration,
        installed_at=installation.installed_at,
        uninstalled_at=installation.uninstalled_at,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[InstallationCreatedResponse])
async def create_installation(
    request: Request,
    payload: InstallationCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Tier comes from the authenticated user, never from the body.
    outcome = await admission.install(
        db,
        admission.InstallRequest(
            package_ref=payload.package_id,
            user_id=principal.user_id,
            user_tier=principal.tier,
            agent_id=payload.agent_id,
            enabled=payload.enabled,
            configuration=payload.configuration,
        ),
    )
    installation = outcome.installation
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="installation.created",
        outcome="success",
        resource_type="installation",
        resource_id=installation.id,
        request_id=get_request_id(request),
        metadata={"package_id": installation.package_id, "agent_id": installation.agent_id},
    )
    data = InstallationCreatedResponse(
        **_to_response(installation).model_dump(),
        royalty=to_royalty_response(outcome.royalty) if outcome.royalty is not None else None,
    )
    return success_response(request=request, data=data)


@router.delete("/{installation_id}", status_code=204, response_class=Response)
async def delete_installation(
    installation_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    installation, removed = await admission.uninstall(
        db, installation_id, caller_id=principal.user_id, is_admin=principal.is_admin
    )
    if not removed:
        return Response(status_code=204)
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="installation.uninstalled",
        outcome="success",
        resource_type="installation",
        resource_id=installation.id,
        request_id=get_request_id(request),
        metadata={"package_id": installation.package_id},
    )
    return Response(status_code=204)


@router.get("/agent/{agent_id}", response_model=SuccessEnvelope[list[InstallationResponse]])
async def list_agent_installations(
    agent_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await installations_repo.list_for_agent(db, principal.user_id, agent_id)
    return success_response(request=request, data=[_to_response(row) for row in rows])
