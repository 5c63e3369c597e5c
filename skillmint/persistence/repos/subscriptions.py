from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import Subscription, now_ms


async def get_active_for_user(session: AsyncSession, user_id: str) -> Subscription | None:
    # Prefer the newest active row if historical data violates the one-active rule.
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def increment_calls_used(session: AsyncSession, subscription_id: str) -> None:
    # Expression update; over-limit detection already happened before the call.
    await session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(calls_used=Subscription.calls_used + 1, updated_at=now_ms())
        .execution_options(synchronize_session=False)
    )
