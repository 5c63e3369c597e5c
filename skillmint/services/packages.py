from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.errors import AdminRequired, ForbiddenError, NotPackageAuthor, PackageNotFound
from skillmint.domain.models import PACKAGE_STATUSES, Package
from skillmint.persistence.errors import translate_integrity_error
from skillmint.persistence.repos import packages as packages_repo


logger = logging.getLogger(__name__)

# Authors may shelve their own packages; banning is reserved for admins.
_AUTHOR_STATUSES = {"active", "archived"}


async def require_package(session: AsyncSession, package_id: str) -> Package:
    package = await packages_repo.get_package(session, package_id)
    if package is None:
        raise PackageNotFound()
    return package


async def require_package_by_slug(session: AsyncSession, slug: str) -> Package:
    package = await packages_repo.get_package_by_slug(session, slug)
    if package is None:
        raise PackageNotFound()
    return package


def ensure_author(package: Package, caller_id: str, *, is_admin: bool = False) -> None:
    if package.author_user_id != caller_id and not is_admin:
        raise NotPackageAuthor()


async def create_package(session: AsyncSession, *, author_user_id: str, fields: dict[str, Any]) -> Package:
    try:
        package = await packages_repo.create_package(session, author_user_id=author_user_id, **fields)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise translate_integrity_error(exc) from exc
    logger.info("package_created package=%s slug=%s author=%s", package.id, package.slug, author_user_id)
    return package


async def update_package(
    session: AsyncSession,
    package_id: str,
    *,
    caller_id: str,
    is_admin: bool,
    changes: dict[str, Any],
) -> Package:
    package = await require_package(session, package_id)
    ensure_author(package, caller_id, is_admin=is_admin)
    status = changes.get("status")
    if status is not None and status not in _AUTHOR_STATUSES and not is_admin:
        raise ForbiddenError("Only admins can ban a package")
    if package.status == "banned" and not is_admin:
        raise ForbiddenError("Banned packages can only be changed by admins")
    try:
        await packages_repo.update_fields(session, package, changes)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise translate_integrity_error(exc) from exc
    logger.info("package_updated package=%s fields=%s", package.id, ",".join(sorted(changes)))
    return package


async def set_status(session: AsyncSession, package_id: str, *, status: str, is_admin: bool) -> tuple[Package, str]:
    if not is_admin:
        raise AdminRequired()
    if status not in PACKAGE_STATUSES:
        raise ValueError(f"Unsupported package status: {status}")
    package = await require_package(session, package_id)
    previous = package.status
    await packages_repo.update_fields(session, package, {"status": status})
    await session.commit()
    logger.info("package_status_changed package=%s from=%s to=%s", package.id, previous, status)
    return package, previous
