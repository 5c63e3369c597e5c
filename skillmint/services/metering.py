from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.config import get_settings
from skillmint.domain.models import Subscription, UsageLedgerEntry, User, now_ms
from skillmint.persistence.repos import ledgers as ledgers_repo
from skillmint.persistence.repos import subscriptions as subscriptions_repo


logger = logging.getLogger(__name__)

_FOUR_PLACES = Decimal("0.0001")
_ZERO = Decimal("0.0000")
_PERIOD_MS = 30 * 24 * 60 * 60 * 1000

QuotaKind = Literal["pay_per_call", "unlimited", "included", "overage"]


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    kind: QuotaKind
    cost_usd: Decimal
    royalty_usd: Decimal
    is_overage: bool
    subscription_id: str | None = None

    @property
    def increments_quota(self) -> bool:
        return self.subscription_id is not None and not self.is_overage


def overage_usd() -> Decimal:
    return (Decimal(get_settings().overage_price_cents) / Decimal(100)).quantize(_FOUR_PLACES)


def creator_royalty(cost_usd: Decimal) -> Decimal:
    share = Decimal(str(get_settings().creator_share))
    return (cost_usd * share).quantize(_FOUR_PLACES, rounding=ROUND_HALF_UP)


def _billed(kind: QuotaKind, subscription_id: str | None = None) -> QuotaDecision:
    cost = overage_usd()
    return QuotaDecision(
        allowed=True,
        kind=kind,
        cost_usd=cost,
        royalty_usd=creator_royalty(cost),
        is_overage=True,
        subscription_id=subscription_id,
    )


def _covered(kind: QuotaKind, subscription_id: str) -> QuotaDecision:
    return QuotaDecision(
        allowed=True,
        kind=kind,
        cost_usd=_ZERO,
        royalty_usd=_ZERO,
        is_overage=False,
        subscription_id=subscription_id,
    )


def decide(tier: str, subscription: Subscription | None) -> QuotaDecision:
    """Pure quota decision for a caller's tier and active subscription."""
    if tier == "free" or subscription is None:
        # Pay-per-call: nothing to exhaust.
        return _billed("pay_per_call")
    if subscription.calls_limit == 0:
        return _covered("unlimited", subscription.id)
    if subscription.calls_used < subscription.calls_limit:
        return _covered("included", subscription.id)
    return _billed("overage", subscription.id)


async def check_quota(session: AsyncSession, user_id: str, tier: str) -> QuotaDecision:
    subscription = None
    if tier != "free":
        subscription = await subscriptions_repo.get_active_for_user(session, user_id)
    return decide(tier, subscription)


async def record_invocation(
    session: AsyncSession, user_id: str, package_id: str, decision: QuotaDecision
) -> UsageLedgerEntry:
    """Append the usage row and bump the subscription counter for included calls.

    Runs inside the caller's transaction; the caller commits. The counter
    update is unconditional, so concurrent bursts that all passed
    check_quota can overshoot calls_limit by the size of the burst.
    """
    entry = await ledgers_repo.append_usage(
        session,
        user_id=user_id,
        package_id=package_id,
        subscription_id=decision.subscription_id,
        is_overage=decision.is_overage,
        cost_usd=decision.cost_usd,
        creator_royalty_usd=decision.royalty_usd,
    )
    if decision.increments_quota and decision.subscription_id is not None:
        await subscriptions_repo.increment_calls_used(session, decision.subscription_id)
    return entry


async def open_subscription(
    session: AsyncSession, *, user_id: str, tier: str, calls_limit: int | None = None
) -> Subscription:
    # Keep at most one active subscription per user.
    await session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .values(status="canceled", updated_at=now_ms())
        .execution_options(synchronize_session=False)
    )
    now = now_ms()
    subscription = Subscription(
        user_id=user_id,
        tier=tier,
        status="active",
        calls_used=0,
        calls_limit=calls_limit if calls_limit is not None else get_settings().call_limits().get(tier, 0),
        period_start=now,
        period_end=now + _PERIOD_MS,
        created_at=now,
        updated_at=now,
    )
    # The stored user tier follows the subscription so install gates agree with billing.
    await session.execute(update(User).where(User.id == user_id).values(tier=tier))
    session.add(subscription)
    await session.commit()
    logger.info("subscription_opened user=%s tier=%s calls_limit=%s", user_id, tier, subscription.calls_limit)
    return subscription
