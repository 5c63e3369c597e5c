from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import RoyaltyLedgerEntry, UsageLedgerEntry, now_ms


# Ledgers are append-only: this module exposes inserts and reads, never updates.


async def append_royalty(
    session: AsyncSession,
    *,
    package_id: str,
    creator_id: str,
    buyer_id: str,
    installation_id: str,
    gross_amount_usd: Decimal,
    royalty_amount_usd: Decimal,
    royalty_percent: Decimal,
) -> RoyaltyLedgerEntry:
    entry = RoyaltyLedgerEntry(
        package_id=package_id,
        creator_id=creator_id,
        buyer_id=buyer_id,
        installation_id=installation_id,
        gross_amount_usd=gross_amount_usd,
        royalty_amount_usd=royalty_amount_usd,
        royalty_percent=royalty_percent,
        created_at=now_ms(),
    )
    session.add(entry)
    await session.flush()
    return entry


async def creator_earnings(
    session: AsyncSession, creator_id: str, *, recent_limit: int = 20
) -> tuple[Decimal, int, list[RoyaltyLedgerEntry]]:
    totals = await session.execute(
        select(
            func.coalesce(func.sum(RoyaltyLedgerEntry.royalty_amount_usd), 0),
            func.count(RoyaltyLedgerEntry.id),
        ).where(RoyaltyLedgerEntry.creator_id == creator_id)
    )
    total_usd, count = totals.one()
    recent = await session.execute(
        select(RoyaltyLedgerEntry)
        .where(RoyaltyLedgerEntry.creator_id == creator_id)
        .order_by(RoyaltyLedgerEntry.created_at.desc(), RoyaltyLedgerEntry.id)
        .limit(recent_limit)
    )
    # SQLite sums decimals as floats; normalize to the ledger scale.
    total = Decimal(str(total_usd)).quantize(Decimal("0.0001"))
    return total, int(count), list(recent.scalars().all())


async def append_usage(
    session: AsyncSession,
    *,
    user_id: str,
    package_id: str,
    subscription_id: str | None,
    is_overage: bool,
    cost_usd: Decimal,
    creator_royalty_usd: Decimal,
) -> UsageLedgerEntry:
    entry = UsageLedgerEntry(
        user_id=user_id,
        package_id=package_id,
        subscription_id=subscription_id,
        is_overage=is_overage,
        cost_usd=cost_usd,
        creator_royalty_usd=creator_royalty_usd,
        created_at=now_ms(),
    )
    session.add(entry)
    await session.flush()
    return entry
