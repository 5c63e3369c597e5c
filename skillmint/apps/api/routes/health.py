from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text

from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import SuccessEnvelope, success_response
from skillmint.persistence.db import get_session, pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Probe the database so orchestrators can drain a node that lost its pool.
    async with get_session() as session:
        await session.execute(text("SELECT 1"))
    payload = HealthResponse(status="ok", database="ok", pool=pool_stats())
    return success_response(request=request, data=payload)
