from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.apps.api.deps import Principal, get_current_principal, get_db
from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import ApiModel, RequestModel, SuccessEnvelope, success_response
from skillmint.services import invocation
from skillmint.services import knowledge as knowledge_service
from skillmint.services.audit import get_request_id, record_event


router = APIRouter(prefix="/security", tags=["security"], responses=DEFAULT_ERROR_RESPONSES)


class KnowledgeUpsertRequest(RequestModel):
    plaintext_rules: str = Field(min_length=1, max_length=200_000)


class KnowledgeStoredResponse(ApiModel):
    package_id: str
    version: int
    content_hash: str
    created_at: int


class KnowledgeReadResponse(KnowledgeStoredResponse):
    plaintext_rules: str


class KnowledgeRevokedResponse(ApiModel):
    package_id: str
    deleted_versions: int


class InvokeRequest(RequestModel):
    query: str = Field(min_length=1, max_length=10_000)
    # Author-only: rules are sent to the reasoner under this credential.
    override_credential: str | None = Field(default=None, min_length=1)


class InvokeResponse(ApiModel):
    conclusion: str
    mode: str
    privacy_notice: str
    invocation_id: str
    cost_usd: Decimal
    is_overage: bool


@router.post("/knowledge/{package_slug}", response_model=SuccessEnvelope[KnowledgeStoredResponse])
async def upsert_knowledge(
    package_slug: str,
    request: Request,
    payload: KnowledgeUpsertRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package, row = await knowledge_service.upsert_knowledge(
        db, package_slug, caller_id=principal.user_id, plaintext_rules=payload.plaintext_rules
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="knowledge.upserted",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=get_request_id(request),
        metadata={"version": row.version, "content_hash": row.content_hash},
    )
    data = KnowledgeStoredResponse(
        package_id=package.id, version=row.version, content_hash=row.content_hash, created_at=row.created_at
    )
    return success_response(request=request, data=data)


@router.get("/knowledge/{package_slug}", response_model=SuccessEnvelope[KnowledgeReadResponse])
async def read_knowledge(
    package_slug: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    request_id = get_request_id(request)
    row, text = await knowledge_service.read_knowledge(
        db, package_slug, caller_id=principal.user_id, request_id=request_id
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="knowledge.read",
        outcome="success",
        resource_type="package",
        resource_id=row.package_id,
        request_id=request_id,
        metadata={"version": row.version},
    )
    data = KnowledgeReadResponse(
        package_id=row.package_id,
        version=row.version,
        content_hash=row.content_hash,
        created_at=row.created_at,
        plaintext_rules=text,
    )
    return success_response(request=request, data=data)


@router.delete("/knowledge/{package_slug}", response_model=SuccessEnvelope[KnowledgeRevokedResponse])
async def revoke_knowledge(
    package_slug: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package, deleted = await knowledge_service.revoke_knowledge(db, package_slug, caller_id=principal.user_id)
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="knowledge.revoked",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=get_request_id(request),
        metadata={"deleted_versions": deleted},
    )
    return success_response(
        request=request, data=KnowledgeRevokedResponse(package_id=package.id, deleted_versions=deleted)
    )


@router.post("/invoke/{package_slug}", response_model=SuccessEnvelope[InvokeResponse])
async def invoke_skill(
    package_slug: str,
    request: Request,
    payload: InvokeRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await invocation.invoke(
        db,
        package_slug,
        caller_id=principal.user_id,
        user_tier=principal.tier,
        query=payload.query,
        override_credential=payload.override_credential,
        request_id=get_request_id(request),
    )
    data = InvokeResponse(
        conclusion=result.conclusion,
        mode=result.mode,
        privacy_notice=result.privacy_notice,
        invocation_id=result.invocation_id,
        cost_usd=result.cost_usd,
        is_overage=result.is_overage,
    )
    return success_response(request=request, data=data)
