from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.config import TIER_RANKS
from skillmint.core.errors import (
    DependencyUnavailableError,
    DuplicateInstall,
    EditionLimitReached,
    ForbiddenError,
    InstallationNotFound,
    PackageInactive,
    PackageNotFound,
    TierInsufficient,
)
from skillmint.domain.models import Installation, RoyaltyLedgerEntry
from skillmint.persistence.errors import is_transient_db_error, translate_integrity_error
from skillmint.persistence.repos import installations as installations_repo
from skillmint.persistence.repos import ledgers as ledgers_repo
from skillmint.persistence.repos import mints as mints_repo
from skillmint.persistence.repos import packages as packages_repo
from skillmint.services.resilience import admission_retry_policy, retry_async


logger = logging.getLogger(__name__)

TIER_NAMES = {rank: name for name, rank in TIER_RANKS.items()}
_FOUR_PLACES = Decimal("0.0001")


@dataclass(frozen=True)
class InstallRequest:
    package_ref: str
    user_id: str
    user_tier: str
    agent_id: str
    enabled: bool = True
    configuration: dict[str, Any] | None = None


@dataclass(frozen=True)
class InstallOutcome:
    installation: Installation
    royalty: RoyaltyLedgerEntry | None


def tier_rank(tier: str) -> int:
    return TIER_RANKS.get(tier.strip().lower(), 0)


def compute_royalty(gross_usd: Decimal, royalty_percent: Decimal) -> Decimal:
    # Half-away-from-zero at four places; amounts are never negative.
    return (Decimal(gross_usd) * Decimal(royalty_percent) / Decimal(100)).quantize(
        _FOUR_PLACES, rounding=ROUND_HALF_UP
    )


async def install(session: AsyncSession, request: InstallRequest) -> InstallOutcome:
    """Admit one installation, never exceeding the mint's edition cap.

    The whole admission runs in a single transaction. Transient lock or
    serialization failures restart it from scratch with jittered backoff.
    """

    async def _attempt() -> InstallOutcome:
        try:
            return await _admit(session, request)
        except BaseException:
            await session.rollback()
            raise

    try:
        return await retry_async(
            _attempt,
            policy=admission_retry_policy(),
            retryable=is_transient_db_error,
            operation="install",
        )
    except IntegrityError as exc:
        raise translate_integrity_error(exc) from exc
    except Exception as exc:
        if is_transient_db_error(exc):
            logger.warning(
                "install_retries_exhausted package=%s user=%s", request.package_ref, request.user_id
            )
            raise DependencyUnavailableError(retry_after_s=1) from exc
        raise


async def _admit(session: AsyncSession, request: InstallRequest) -> InstallOutcome:
    package = await packages_repo.resolve_package(session, request.package_ref)
    if package is None:
        raise PackageNotFound()
    if package.status != "active":
        raise PackageInactive(status=package.status)

    current_rank = tier_rank(request.user_tier)
    if package.required_tier > current_rank:
        raise TierInsufficient(
            f"This skill requires the {TIER_NAMES.get(package.required_tier, 'unknown')} tier",
            requiredTier=package.required_tier,
            requiredTierName=TIER_NAMES.get(package.required_tier),
            currentTier=request.user_tier,
        )

    if await installations_repo.find_active(session, request.user_id, package.id) is not None:
        raise DuplicateInstall()

    installation = await installations_repo.insert_active(
        session,
        package_id=package.id,
        package_version=package.version,
        user_id=request.user_id,
        agent_id=request.agent_id,
        enabled=request.enabled,
        configuration=request.configuration,
    )

    mint = await mints_repo.get_mint_for_package(session, package.id)
    if mint is not None and not await mints_repo.claim_edition(session, package.id):
        # Keep the failed row as evidence of the refused admission.
        await installations_repo.mark_failed(session, installation, "edition_limit_reached")
        await session.commit()
        logger.info(
            "install_refused_edition_limit package=%s user=%s max_editions=%s",
            package.id,
            request.user_id,
            mint.max_editions,
        )
        raise EditionLimitReached(
            f"All {mint.max_editions} editions of this {mint.rarity} skill have been minted",
            rarity=mint.rarity,
            maxEditions=mint.max_editions,
        )

    await packages_repo.increment_install_count(session, package.id)

    royalty = None
    price = Decimal(package.price_usd or 0)
    if mint is not None and price > 0:
        percent = Decimal(mint.creator_royalty_percent)
        royalty = await ledgers_repo.append_royalty(
            session,
            package_id=package.id,
            creator_id=mint.creator_id,
            buyer_id=request.user_id,
            installation_id=installation.id,
            gross_amount_usd=price.quantize(_FOUR_PLACES),
            royalty_amount_usd=compute_royalty(price, percent),
            royalty_percent=percent,
        )

    await session.commit()
    logger.info("install_admitted package=%s user=%s installation=%s", package.id, request.user_id, installation.id)
    return InstallOutcome(installation=installation, royalty=royalty)


async def uninstall(
    session: AsyncSession, installation_id: str, *, caller_id: str, is_admin: bool
) -> tuple[Installation, bool]:
    """Mark an installation uninstalled; returns the row and whether it changed.

    Rows that are not active are left as they are.
    """
    installation = await installations_repo.get_installation(session, installation_id)
    if installation is None:
        raise InstallationNotFound()
    if installation.user_id != caller_id and not is_admin:
        raise ForbiddenError("Only the installing user can uninstall")
    # Minted editions are permanent; only the installation row changes.
    if installation.status == "active":
        await installations_repo.mark_uninstalled(session, installation)
        await session.commit()
        logger.info("install_removed installation=%s user=%s", installation.id, caller_id)
        return installation, True
    return installation, False
