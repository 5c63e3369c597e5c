from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import InvocationLogEntry, Package


async def lock_chain(session: AsyncSession, package_id: str) -> None:
    # The package row is the per-package sentinel; appenders queue on it until commit.
    await session.execute(select(Package.id).where(Package.id == package_id).with_for_update())


async def last_entry(session: AsyncSession, package_id: str) -> InvocationLogEntry | None:
    result = await session.execute(
        select(InvocationLogEntry)
        .where(InvocationLogEntry.package_id == package_id)
        .order_by(InvocationLogEntry.seq.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def insert_entry(session: AsyncSession, entry: InvocationLogEntry) -> InvocationLogEntry:
    session.add(entry)
    await session.flush()
    return entry


async def list_chain(session: AsyncSession, package_id: str) -> list[InvocationLogEntry]:
    result = await session.execute(
        select(InvocationLogEntry)
        .where(InvocationLogEntry.package_id == package_id)
        .order_by(InvocationLogEntry.seq)
    )
    return list(result.scalars().all())
