from __future__ import annotations

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import EncryptedKnowledge, now_ms


async def get_active(session: AsyncSession, package_id: str) -> EncryptedKnowledge | None:
    result = await session.execute(
        select(EncryptedKnowledge).where(
            EncryptedKnowledge.package_id == package_id,
            EncryptedKnowledge.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def replace_active(
    session: AsyncSession,
    *,
    package_id: str,
    wrapped_dek: str,
    ciphertext: bytes,
    content_hash: str,
) -> EncryptedKnowledge:
    # Archive the previous active row before inserting so the partial unique index holds.
    latest_version = await session.scalar(
        select(func.max(EncryptedKnowledge.version)).where(EncryptedKnowledge.package_id == package_id)
    )
    await session.execute(
        update(EncryptedKnowledge)
        .where(EncryptedKnowledge.package_id == package_id, EncryptedKnowledge.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    row = EncryptedKnowledge(
        package_id=package_id,
        wrapped_dek=wrapped_dek,
        ciphertext=ciphertext,
        content_hash=content_hash,
        version=int(latest_version or 0) + 1,
        is_active=True,
        created_at=now_ms(),
    )
    session.add(row)
    await session.flush()
    return row


async def delete_all(session: AsyncSession, package_id: str) -> int:
    result = await session.execute(
        delete(EncryptedKnowledge)
        .where(EncryptedKnowledge.package_id == package_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
