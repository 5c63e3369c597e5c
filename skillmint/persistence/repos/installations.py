from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import Installation, now_ms


async def get_installation(session: AsyncSession, installation_id: str) -> Installation | None:
    result = await session.execute(select(Installation).where(Installation.id == installation_id))
    return result.scalar_one_or_none()


async def find_active(session: AsyncSession, user_id: str, package_id: str) -> Installation | None:
    result = await session.execute(
        select(Installation).where(
            Installation.user_id == user_id,
            Installation.package_id == package_id,
            Installation.status == "active",
        )
    )
    return result.scalar_one_or_none()


async def insert_active(
    session: AsyncSession,
    *,
    package_id: str,
    package_version: str,
    user_id: str,
    agent_id: str,
    enabled: bool,
    configuration: dict | None,
) -> Installation:
    installation = Installation(
        package_id=package_id,
        package_version=package_version,
        user_id=user_id,
        agent_id=agent_id,
        status="active",
        enabled=enabled,
        configuration=configuration,
        installed_at=now_ms(),
    )
    session.add(installation)
    # Flush so the partial unique index rejects a racing duplicate right here.
    await session.flush()
    return installation


async def mark_failed(session: AsyncSession, installation: Installation, reason: str) -> None:
    installation.status = "failed"
    installation.error_message = reason
    await session.flush()


async def mark_uninstalled(session: AsyncSession, installation: Installation) -> Installation:
    installation.status = "uninstalled"
    installation.uninstalled_at = now_ms()
    await session.flush()
    return installation


async def list_for_agent(session: AsyncSession, user_id: str, agent_id: str) -> list[Installation]:
    result = await session.execute(
        select(Installation)
        .where(
            Installation.user_id == user_id,
            Installation.agent_id == agent_id,
            Installation.status == "active",
        )
        .order_by(Installation.installed_at.desc(), Installation.id)
    )
    return list(result.scalars().all())


async def count_active(session: AsyncSession, package_id: str) -> int:
    total = await session.scalar(
        select(func.count())
        .select_from(Installation)
        .where(Installation.package_id == package_id, Installation.status == "active")
    )
    return int(total or 0)

