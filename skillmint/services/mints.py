from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.errors import AlreadyMinted, AttestationRequired, NotPackageAuthor, PackageNotFound
from skillmint.domain.models import Mint, RoyaltyLedgerEntry, now_ms
from skillmint.persistence.errors import translate_integrity_error
from skillmint.persistence.repos import ledgers as ledgers_repo
from skillmint.persistence.repos import mints as mints_repo
from skillmint.persistence.repos import packages as packages_repo


logger = logging.getLogger(__name__)

# Edition caps applied when the creator does not choose one.
DEFAULT_MAX_EDITIONS: dict[str, int | None] = {
    "common": None,
    "rare": 1000,
    "epic": 100,
    "legendary": 10,
}


def default_max_editions(rarity: str) -> int | None:
    return DEFAULT_MAX_EDITIONS.get(rarity)


def mint_origin(rarity: str) -> str:
    # Rare and above come out of the graduation lab; common mints are manual.
    return "manual" if rarity == "common" else "beta-lab"


async def create_mint(
    session: AsyncSession,
    *,
    caller_id: str,
    package_id: str,
    rarity: str,
    max_editions: int | None,
    creator_royalty_percent: Decimal,
    graduation_certificate: Any | None,
) -> Mint:
    package = await packages_repo.get_package(session, package_id)
    if package is None:
        raise PackageNotFound()
    if package.author_user_id != caller_id:
        raise NotPackageAuthor("Not authorized to mint this package")
    if await mints_repo.get_mint_for_package(session, package_id) is not None:
        raise AlreadyMinted()
    if rarity != "common" and not graduation_certificate:
        raise AttestationRequired()

    now = now_ms()
    mint = Mint(
        package_id=package_id,
        rarity=rarity,
        max_editions=max_editions,
        minted_count=0,
        creator_id=caller_id,
        creator_royalty_percent=creator_royalty_percent,
        graduation_certificate=graduation_certificate,
        origin=mint_origin(rarity),
        created_at=now,
        updated_at=now,
    )
    try:
        await mints_repo.create_mint(session, mint)
        await session.commit()
    except IntegrityError as exc:
        # A concurrent mint for the same package lost the race on uq_mints_package.
        await session.rollback()
        raise translate_integrity_error(exc) from exc
    logger.info("mint_created package=%s rarity=%s max_editions=%s", package_id, rarity, mint.max_editions)
    return mint


async def creator_earnings(session: AsyncSession, creator_id: str) -> tuple[Decimal, int, list[RoyaltyLedgerEntry]]:
    return await ledgers_repo.creator_earnings(session, creator_id, recent_limit=20)
