from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import ApiKey, User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_key_with_user(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    result = await session.execute(
        select(ApiKey, User).join(User, User.id == ApiKey.user_id).where(ApiKey.key_hash == key_hash)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]

