from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.config import get_settings
from skillmint.core.errors import (
    CryptoAuthFailure,
    DependencyUnavailableError,
    KnowledgeUnavailable,
    NotPackageAuthor,
    PackageInactive,
    QuotaExceeded,
)
from skillmint.domain.models import EncryptedKnowledge
from skillmint.persistence.repos import knowledge as knowledge_repo
from skillmint.providers.reasoner.factory import get_reasoner
from skillmint.services import hash_chain, metering, rule_engine
from skillmint.services.audit import record_event
from skillmint.services.crypto.envelope import decrypt_knowledge, unwrap_dek
from skillmint.services.crypto.secure_context import SecureScope, with_secure_context
from skillmint.services.knowledge import report_crypto_failure
from skillmint.services.packages import require_package_by_slug


logger = logging.getLogger(__name__)

Mode = Literal["tenant_credential", "platform", "offline"]

PRIVACY_NOTICES: dict[str, str] = {
    "tenant_credential": (
        "TENANT CREDENTIAL MODE: your skill rules were sent to the external reasoning service "
        "using the credential you supplied. Data handling is governed by your own agreement "
        "with that service."
    ),
    "platform": (
        "PLATFORM MODE: rules were evaluated in-process. Only a structured skeleton of scores "
        "and conclusion tokens was sent to the external reasoning service under the platform "
        "credential. No rule content was transmitted."
    ),
    "offline": (
        "OFFLINE MODE: rules were evaluated entirely in-process. "
        "No data was sent to any external service."
    ),
}

_POLISH_SYSTEM_PROMPT = (
    "You are a professional report writer. Rephrase the following structured evaluation into a "
    "concise natural language response. Do not add information beyond what is provided."
)


@dataclass(frozen=True)
class Conclusion:
    text: str
    mode: Mode
    inference_ms: int | None = None


@dataclass(frozen=True)
class InvocationResult:
    conclusion: str
    mode: Mode
    privacy_notice: str
    invocation_id: str
    cost_usd: Decimal
    is_overage: bool


def select_mode(override_credential: str | None, platform_credential: str | None) -> Mode:
    if override_credential:
        return "tenant_credential"
    if platform_credential:
        return "platform"
    return "offline"


async def _conclude(rules_text: str, query: str, mode: Mode, credential: str | None) -> Conclusion:
    settings = get_settings()
    if mode == "tenant_credential" and credential:
        # The author's own credential: the plaintext rules go out as the system prompt.
        reply = await get_reasoner(credential).complete(
            system=rules_text, prompt=query, max_tokens=settings.reasoner_max_tokens
        )
        return Conclusion(text=reply.text, mode=mode, inference_ms=reply.inference_ms)

    rules = rule_engine.try_parse_rules(rules_text)
    evaluation = rule_engine.evaluate(rules, query) if rules is not None else None
    if mode == "platform" and credential:
        reply = await get_reasoner(credential).complete(
            system=_POLISH_SYSTEM_PROMPT,
            prompt=rule_engine.to_safe_prompt(evaluation, query),
            max_tokens=settings.reasoner_max_tokens,
        )
        return Conclusion(text=reply.text, mode=mode, inference_ms=reply.inference_ms)

    if evaluation is None:
        return Conclusion(text=rule_engine.placeholder_for_freeform(query), mode="offline")
    return Conclusion(text=rule_engine.render_report(evaluation), mode="offline")


async def invoke(
    session: AsyncSession,
    slug: str,
    *,
    caller_id: str,
    user_tier: str,
    query: str,
    override_credential: str | None = None,
    request_id: str | None = None,
) -> InvocationResult:
    """Run one skill invocation under the request deadline.

    Expiry cancels the pipeline; the secure context still wipes on the way
    out and nothing is written.
    """
    deadline_s = get_settings().request_deadline_ms / 1000.0
    try:
        return await asyncio.wait_for(
            _invoke(
                session,
                slug,
                caller_id=caller_id,
                user_tier=user_tier,
                query=query,
                override_credential=override_credential,
                request_id=request_id,
            ),
            timeout=deadline_s,
        )
    except TimeoutError as exc:
        await session.rollback()
        logger.warning("invoke_deadline_exceeded slug=%s caller=%s", slug, caller_id)
        raise DependencyUnavailableError("Request deadline exceeded", retry_after_s=5) from exc


async def _invoke(
    session: AsyncSession,
    slug: str,
    *,
    caller_id: str,
    user_tier: str,
    query: str,
    override_credential: str | None,
    request_id: str | None,
) -> InvocationResult:
    package = await require_package_by_slug(session, slug)
    if package.status == "banned":
        raise PackageInactive(status=package.status)
    if override_credential and package.author_user_id != caller_id:
        raise NotPackageAuthor("Tenant credential mode is only available to the package author")

    knowledge: EncryptedKnowledge | None = await knowledge_repo.get_active(session, package.id)
    if knowledge is None:
        raise KnowledgeUnavailable()

    decision = await metering.check_quota(session, caller_id, user_tier)
    if not decision.allowed:
        raise QuotaExceeded()

    platform_credential = get_settings().reasoner_credential
    mode = select_mode(override_credential, platform_credential)
    credential = override_credential if mode == "tenant_credential" else platform_credential

    async def _body(scope: SecureScope) -> Conclusion:
        plaintext = scope.adopt(decrypt_knowledge(knowledge.ciphertext, scope.key))
        return await _conclude(plaintext.decode("utf-8"), query, mode, credential)

    try:
        conclusion = await with_secure_context(lambda: unwrap_dek(knowledge.wrapped_dek), _body)
    except CryptoAuthFailure:
        await report_crypto_failure(package, caller_id, request_id=request_id)
        raise

    try:
        # Usage first: its insert takes the write lock before the chain head is read.
        await metering.record_invocation(session, caller_id, package.id, decision)
        entry = await hash_chain.append(
            session,
            package_id=package.id,
            caller_id=caller_id,
            conclusion=conclusion.text,
            mode=conclusion.mode,
            inference_ms=conclusion.inference_ms,
        )
        await session.commit()
    except BaseException:
        await session.rollback()
        raise

    logger.info(
        "invoke_completed package=%s caller=%s mode=%s overage=%s",
        package.id,
        caller_id,
        conclusion.mode,
        decision.is_overage,
    )
    await record_event(
        actor_id=caller_id,
        actor_role=None,
        event_type="invocation.completed",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=request_id,
        metadata={"mode": conclusion.mode, "quota_kind": decision.kind},
    )
    return InvocationResult(
        conclusion=conclusion.text,
        mode=conclusion.mode,
        privacy_notice=PRIVACY_NOTICES[conclusion.mode],
        invocation_id=entry.id,
        cost_usd=decision.cost_usd,
        is_overage=decision.is_overage,
    )
