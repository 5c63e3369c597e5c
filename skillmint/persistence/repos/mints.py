from __future__ import annotations

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import Mint


async def get_mint_for_package(session: AsyncSession, package_id: str) -> Mint | None:
    result = await session.execute(select(Mint).where(Mint.package_id == package_id))
    return result.scalar_one_or_none()


async def create_mint(session: AsyncSession, mint: Mint) -> Mint:
    session.add(mint)
    # Flush so a second mint for the package fails on uq_mints_package here.
    await session.flush()
    return mint


async def claim_edition(session: AsyncSession, package_id: str) -> bool:
    """Consume one edition of the package's mint.

    The WHERE clause is re-evaluated under the row lock, so concurrent
    claimers for the last slot are serialized and exactly one wins.
    Returns False when the cap is exhausted.
    """
    result = await session.execute(
        update(Mint)
        .where(
            Mint.package_id == package_id,
            or_(Mint.max_editions.is_(None), Mint.minted_count < Mint.max_editions),
        )
        .values(minted_count=Mint.minted_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
