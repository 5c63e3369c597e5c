from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.errors import CryptoAuthFailure, KnowledgeAlreadyRevoked, KnowledgeUnavailable
from skillmint.domain.models import EncryptedKnowledge, Package
from skillmint.persistence.repos import knowledge as knowledge_repo
from skillmint.services.audit import record_event
from skillmint.services.crypto.envelope import (
    decrypt_knowledge,
    encrypt_knowledge,
    generate_dek,
    unwrap_dek,
    wrap_dek,
)
from skillmint.services.crypto.secure_context import SecureScope, with_secure_context
from skillmint.services.crypto.utils import sha256_hex
from skillmint.services.packages import ensure_author, require_package_by_slug


logger = logging.getLogger(__name__)


async def report_crypto_failure(package: Package, caller_id: str, *, request_id: str | None) -> None:
    # Full detail goes to logs and audit; the caller only sees a generic error.
    logger.error("crypto_auth_failure package=%s caller=%s", package.id, caller_id)
    await record_event(
        actor_id=caller_id,
        actor_role=None,
        event_type="crypto.auth_failure",
        outcome="failure",
        resource_type="package",
        resource_id=package.id,
        request_id=request_id,
        error_code=CryptoAuthFailure.code,
    )


async def upsert_knowledge(
    session: AsyncSession, slug: str, *, caller_id: str, plaintext_rules: str
) -> tuple[Package, EncryptedKnowledge]:
    package = await require_package_by_slug(session, slug)
    ensure_author(package, caller_id)

    async def _seal(scope: SecureScope) -> tuple[str, bytes, str]:
        plaintext = scope.adopt(bytearray(plaintext_rules.encode("utf-8")))
        return wrap_dek(scope.key), encrypt_knowledge(plaintext, scope.key), sha256_hex(plaintext)

    wrapped_dek, ciphertext, content_hash = await with_secure_context(generate_dek, _seal)
    row = await knowledge_repo.replace_active(
        session,
        package_id=package.id,
        wrapped_dek=wrapped_dek,
        ciphertext=ciphertext,
        content_hash=content_hash,
    )
    await session.commit()
    logger.info("knowledge_upserted package=%s version=%s", package.id, row.version)
    return package, row


async def read_knowledge(
    session: AsyncSession, slug: str, *, caller_id: str, request_id: str | None = None
) -> tuple[EncryptedKnowledge, str]:
    package = await require_package_by_slug(session, slug)
    ensure_author(package, caller_id)
    row = await knowledge_repo.get_active(session, package.id)
    if row is None:
        raise KnowledgeUnavailable()

    async def _open(scope: SecureScope) -> str:
        plaintext = scope.adopt(decrypt_knowledge(row.ciphertext, scope.key))
        return plaintext.decode("utf-8")

    try:
        text = await with_secure_context(lambda: unwrap_dek(row.wrapped_dek), _open)
    except CryptoAuthFailure:
        await report_crypto_failure(package, caller_id, request_id=request_id)
        raise
    return row, text


async def revoke_knowledge(session: AsyncSession, slug: str, *, caller_id: str) -> tuple[Package, int]:
    """Crypto-shred every stored version; without the wrapped DEKs nothing is recoverable."""
    package = await require_package_by_slug(session, slug)
    ensure_author(package, caller_id)
    deleted = await knowledge_repo.delete_all(session, package.id)
    if deleted == 0:
        await session.rollback()
        raise KnowledgeAlreadyRevoked()
    await session.commit()
    logger.info("knowledge_revoked package=%s rows=%s", package.id, deleted)
    return package, deleted
