from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.apps.api.deps import Principal, get_current_principal, get_db
from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import ApiModel, RequestModel, SuccessEnvelope, success_response
from skillmint.domain.models import Mint, RoyaltyLedgerEntry
from skillmint.services import mints as mints_service
from skillmint.services.audit import get_request_id, record_event


router = APIRouter(prefix="/mints", tags=["mints"], responses=DEFAULT_ERROR_RESPONSES)


class MintCreateRequest(RequestModel):
    package_id: str
    rarity: Literal["common", "rare", "epic", "legendary"] = "common"
    # Omitted means the rarity default; an explicit null means unlimited.
    max_editions: int | None = Field(default=None, ge=1)
    creator_royalty_percent: Decimal = Field(default=Decimal("70.00"), ge=0, le=100, decimal_places=2)
    graduation_certificate: dict[str, Any] | None = None


class MintResponse(ApiModel):
    id: str
    package_id: str
    rarity: str
    max_editions: int | None
    minted_count: int
    creator_id: str
    creator_royalty_percent: Decimal
    origin: str
    created_at: int


class RoyaltyEntryResponse(ApiModel):
    id: str
    package_id: str
    buyer_id: str
    installation_id: str
    gross_amount_usd: Decimal
    royalty_amount_usd: Decimal
    royalty_percent: Decimal
    created_at: int


class EarningsResponse(ApiModel):
    total_usd: Decimal
    count: int
    recent: list[RoyaltyEntryResponse]


def _to_mint_response(mint: Mint) -> MintResponse:
    return MintResponse(
        id=mint.id,
        package_id=mint.package_id,
        rarity=mint.rarity,
        max_editions=mint.max_editions,
        minted_count=mint.minted_count,
        creator_id=mint.creator_id,
        creator_royalty_percent=mint.creator_royalty_percent,
        origin=mint.origin,
        created_at=mint.created_at,
    )


def to_royalty_response(entry: RoyaltyLedgerEntry) -> RoyaltyEntryResponse:
    return RoyaltyEntryResponse(
        id=entry.id,
        package_id=entry.package_id,
        buyer_id=entry.buyer_id,
        installation_id=entry.installation_id,
        gross_amount_usd=entry.gross_amount_usd,
        royalty_amount_usd=entry.royalty_amount_usd,
        royalty_percent=entry.royalty_percent,
        created_at=entry.created_at,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[MintResponse])
async def create_mint(
    request: Request,
    payload: MintCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    max_editions = payload.max_editions
    if "max_editions" not in payload.model_fields_set:
        max_editions = mints_service.default_max_editions(payload.rarity)
    mint = await mints_service.create_mint(
        db,
        caller_id=principal.user_id,
        package_id=payload.package_id,
        rarity=payload.rarity,
        max_editions=max_editions,
        creator_royalty_percent=payload.creator_royalty_percent,
        graduation_certificate=payload.graduation_certificate,
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="mint.created",
        outcome="success",
        resource_type="package",
        resource_id=mint.package_id,
        request_id=get_request_id(request),
        metadata={"rarity": mint.rarity, "max_editions": mint.max_editions, "origin": mint.origin},
    )
    return success_response(request=request, data=_to_mint_response(mint))


@router.get("/my-earnings", response_model=SuccessEnvelope[EarningsResponse])
async def my_earnings(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    total, count, recent = await mints_service.creator_earnings(db, principal.user_id)
    payload = EarningsResponse(
        total_usd=total, count=count, recent=[to_royalty_response(entry) for entry in recent]
    )
    return success_response(request=request, data=payload)
