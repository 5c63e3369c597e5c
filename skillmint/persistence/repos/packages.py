from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import Package, PackageTag, now_ms


@dataclass(frozen=True)
class PackageSearch:
    query: str | None = None
    category: str | None = None
    license: str | None = None
    maturity: str | None = None
    tags: tuple[str, ...] = ()
    min_rating: Decimal | None = None
    max_price_usd: Decimal | None = None
    sort: str = "popularity"
    limit: int = 20
    offset: int = 0


async def get_package(session: AsyncSession, package_id: str) -> Package | None:
    result = await session.execute(select(Package).where(Package.id == package_id))
    return result.scalar_one_or_none()


async def get_package_by_slug(session: AsyncSession, slug: str) -> Package | None:
    result = await session.execute(select(Package).where(Package.slug == slug))
    return result.scalar_one_or_none()


async def resolve_package(session: AsyncSession, slug_or_id: str) -> Package | None:
    # Internal ids win over slugs so a slug spelled like an id cannot shadow another package.
    package = await get_package(session, slug_or_id)
    if package is not None:
        return package
    return await get_package_by_slug(session, slug_or_id)


async def list_packages_by_author(session: AsyncSession, author_user_id: str) -> list[Package]:
    result = await session.execute(
        select(Package)
        .where(Package.author_user_id == author_user_id)
        .order_by(Package.created_at.desc(), Package.id)
    )
    return list(result.scalars().all())


async def create_package(session: AsyncSession, **fields: Any) -> Package:
    tags = _normalize_tags(fields.pop("tags", None) or [])
    package = Package(tags=tags, **fields)
    session.add(package)
    # Flush so unique slug violations surface here and the id is assigned.
    await session.flush()
    await _replace_tags(session, package.id, tags)
    return package


async def update_fields(session: AsyncSession, package: Package, changes: dict[str, Any]) -> Package:
    if "tags" in changes:
        tags = _normalize_tags(changes.pop("tags") or [])
        package.tags = tags
        await _replace_tags(session, package.id, tags)
    for key, value in changes.items():
        setattr(package, key, value)
    package.updated_at = now_ms()
    await session.flush()
    return package


async def increment_install_count(session: AsyncSession, package_id: str) -> None:
    # Expression update keeps the counter free of lost updates.
    await session.execute(
        update(Package)
        .where(Package.id == package_id)
        .values(install_count=Package.install_count + 1)
    )


async def search_packages(session: AsyncSession, params: PackageSearch) -> tuple[list[Package], int]:
    # Only active packages are listed; archived and banned stay reachable by id.
    conditions = [Package.status == "active"]
    if params.query:
        pattern = _contains_pattern(params.query)
        tag_match = select(PackageTag.package_id).where(PackageTag.tag == params.query)
        conditions.append(
            or_(
                Package.display_name.ilike(pattern, escape="\\"),
                Package.description.ilike(pattern, escape="\\"),
                Package.id.in_(tag_match),
            )
        )
    if params.category:
        conditions.append(Package.category == params.category)
    if params.license:
        conditions.append(Package.license == params.license)
    if params.maturity:
        conditions.append(Package.maturity == params.maturity)
    for tag in params.tags:
        conditions.append(Package.id.in_(select(PackageTag.package_id).where(PackageTag.tag == tag)))
    if params.min_rating is not None:
        conditions.append(Package.rating >= params.min_rating)
    if params.max_price_usd is not None:
        conditions.append(Package.price_usd <= params.max_price_usd)

    total = await session.scalar(select(func.count()).select_from(Package).where(*conditions))
    stmt = (
        select(Package)
        .where(*conditions)
        .order_by(*_sort_order(params.sort))
        .offset(params.offset)
        .limit(params.limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total or 0)


def _contains_pattern(text: str) -> str:
    # Caller text is literal; only the surrounding wildcards match.
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _sort_order(sort: str) -> list[Any]:
    # Tie-break on id so pagination is stable across identical sort keys.
    if sort == "rating":
        return [Package.rating.desc(), Package.rating_count.desc(), Package.id]
    if sort == "recent":
        return [Package.released_at.desc(), Package.id]
    if sort == "name":
        return [Package.display_name.asc(), Package.id]
    return [Package.install_count.desc(), Package.id]


def _normalize_tags(tags: list[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        cleaned = tag.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


async def _replace_tags(session: AsyncSession, package_id: str, tags: list[str]) -> None:
    await session.execute(delete(PackageTag).where(PackageTag.package_id == package_id))
    for tag in tags:
        session.add(PackageTag(package_id=package_id, tag=tag))
    await session.flush()
