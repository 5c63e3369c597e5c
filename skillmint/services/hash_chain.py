from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.domain.models import InvocationLogEntry, now_ms
from skillmint.persistence.repos import invocation_logs as logs_repo
from skillmint.services.crypto.utils import sha256_hex


GENESIS_HASH = "GENESIS"


@dataclass(frozen=True)
class ChainReport:
    valid: bool
    entries: int
    broken_at: str | None = None


def conclusion_hash(conclusion: str) -> str:
    return sha256_hex(conclusion)


def event_hash(package_id: str, caller_id: str, conclusion_digest: str, prev_hash: str) -> str:
    return sha256_hex(f"{package_id}{caller_id}{conclusion_digest}{prev_hash}")


async def append(
    session: AsyncSession,
    *,
    package_id: str,
    caller_id: str,
    conclusion: str,
    mode: str,
    inference_ms: int | None,
) -> InvocationLogEntry:
    """Append one link to the package's invocation chain.

    Must run inside the caller's write transaction so the head read and the
    insert are serialized against other appenders for the same package.
    """
    await logs_repo.lock_chain(session, package_id)
    head = await logs_repo.last_entry(session, package_id)
    prev_hash = head.event_hash if head is not None else GENESIS_HASH
    digest = conclusion_hash(conclusion)
    entry = InvocationLogEntry(
        package_id=package_id,
        caller_id=caller_id,
        mode=mode,
        inference_ms=inference_ms,
        conclusion_hash=digest,
        prev_hash=prev_hash,
        event_hash=event_hash(package_id, caller_id, digest, prev_hash),
        created_at=now_ms(),
    )
    return await logs_repo.insert_entry(session, entry)


def verify_entries(entries: Iterable[InvocationLogEntry]) -> ChainReport:
    expected_prev = GENESIS_HASH
    count = 0
    for entry in entries:
        count += 1
        recomputed = event_hash(entry.package_id, entry.caller_id, entry.conclusion_hash, entry.prev_hash)
        if entry.prev_hash != expected_prev or entry.event_hash != recomputed:
            return ChainReport(valid=False, entries=count, broken_at=entry.id)
        expected_prev = entry.event_hash
    return ChainReport(valid=True, entries=count)


async def verify_chain(session: AsyncSession, package_id: str) -> ChainReport:
    return verify_entries(await logs_repo.list_chain(session, package_id))
