from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from skillmint.apps.api.main import create_app
from skillmint.core.config import get_settings
from skillmint.domain.models import (
    AuditEvent,
    EncryptedKnowledge,
    InvocationLogEntry,
    Subscription,
    UsageLedgerEntry,
)
from skillmint.persistence.db import SessionLocal
from skillmint.providers.reasoner.anthropic import AnthropicReasoner
from skillmint.services.hash_chain import GENESIS_HASH, verify_chain
from skillmint.tests.utils.auth import create_test_api_key
from skillmint.tests.utils.market import create_package_via_api, seed_subscription


RULES = json.dumps(
    [
        {
            "id": "secret-rule-1",
            "dimension": "market_fit",
            "conclusion": "strong_signal",
            "condition": {"keywords": ["enterprise"]},
            "weight": 0.9,
        },
        {
            "id": "secret-rule-2",
            "dimension": "risk",
            "conclusion": "regulated_buyer",
            "condition": {"keywords": ["bank"]},
        },
    ]
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _use_reasoner(monkeypatch, handler) -> None:
    monkeypatch.setattr(
        "skillmint.services.invocation.get_reasoner",
        lambda credential: AnthropicReasoner(credential, transport=httpx.MockTransport(handler)),
    )


async def _publish(client: AsyncClient, headers: dict[str, str], rules: str = RULES) -> dict:
    package = await create_package_via_api(client, headers)
    resp = await client.post(
        f"/v1/security/knowledge/{package['slug']}", headers=headers, json={"plaintextRules": rules}
    )
    assert resp.status_code == 200, resp.text
    return package


async def _ledger_rows(package_id: str) -> tuple[list[UsageLedgerEntry], list[InvocationLogEntry]]:
    async with SessionLocal() as session:
        usage = (
            await session.execute(select(UsageLedgerEntry).where(UsageLedgerEntry.package_id == package_id))
        ).scalars().all()
        logs = (
            await session.execute(
                select(InvocationLogEntry)
                .where(InvocationLogEntry.package_id == package_id)
                .order_by(InvocationLogEntry.seq)
            )
        ).scalars().all()
    return list(usage), list(logs)


@pytest.mark.asyncio
async def test_knowledge_is_stored_encrypted_and_readable_by_author_only() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, other_headers, _other_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, author_headers)
        read_back = await client.get(f"/v1/security/knowledge/{package['slug']}", headers=author_headers)
        forbidden = await client.get(f"/v1/security/knowledge/{package['slug']}", headers=other_headers)
        forbidden_write = await client.post(
            f"/v1/security/knowledge/{package['slug']}", headers=other_headers, json={"plaintextRules": "x"}
        )

    assert read_back.status_code == 200
    assert read_back.json()["data"]["plaintextRules"] == RULES
    assert read_back.json()["data"]["version"] == 1
    assert forbidden.status_code == 403
    assert forbidden_write.status_code == 403

    async with SessionLocal() as session:
        row = (
            await session.execute(select(EncryptedKnowledge).where(EncryptedKnowledge.package_id == package["id"]))
        ).scalar_one()
    assert b"secret-rule-1" not in row.ciphertext
    assert "secret-rule-1" not in row.wrapped_dek


@pytest.mark.asyncio
async def test_upsert_archives_previous_version() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers)
        second = await client.post(
            f"/v1/security/knowledge/{package['slug']}", headers=headers, json={"plaintextRules": "free-form v2"}
        )
        read_back = await client.get(f"/v1/security/knowledge/{package['slug']}", headers=headers)

    assert second.json()["data"]["version"] == 2
    assert read_back.json()["data"]["plaintextRules"] == "free-form v2"
    async with SessionLocal() as session:
        rows = (
            await session.execute(
                select(EncryptedKnowledge)
                .where(EncryptedKnowledge.package_id == package["id"])
                .order_by(EncryptedKnowledge.version)
            )
        ).scalars().all()
    assert [(row.version, row.is_active) for row in rows] == [(1, False), (2, True)]


@pytest.mark.asyncio
async def test_revoke_shreds_every_version() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers)
        await client.post(
            f"/v1/security/knowledge/{package['slug']}", headers=headers, json={"plaintextRules": "v2"}
        )
        revoked = await client.delete(f"/v1/security/knowledge/{package['slug']}", headers=headers)
        again = await client.delete(f"/v1/security/knowledge/{package['slug']}", headers=headers)
        invoke = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
        )

    assert revoked.status_code == 200
    assert revoked.json()["data"]["deletedVersions"] == 2
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "KNOWLEDGE_ALREADY_REVOKED"
    assert invoke.status_code == 404
    assert invoke.json()["error"]["code"] == "KNOWLEDGE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_offline_invoke_writes_usage_and_chain() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, caller_headers, caller_id, _key = await create_test_api_key(tier="free")
    async with _client() as client:
        package = await _publish(client, author_headers)
        first = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=caller_headers, json={"query": "enterprise bank"}
        )
        second = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=caller_headers, json={"query": "enterprise bank"}
        )

    assert first.status_code == 200
    data = first.json()["data"]
    assert data["mode"] == "offline"
    assert data["privacyNotice"].startswith("OFFLINE MODE")
    assert data["conclusion"] == second.json()["data"]["conclusion"]
    assert "recommend" in data["conclusion"]
    assert "secret-rule-1" not in data["conclusion"]
    assert "enterprise" not in data["conclusion"]
    assert data["isOverage"] is True
    assert data["costUsd"] == "0.0500"

    usage, logs = await _ledger_rows(package["id"])
    assert len(usage) == 2
    assert all(row.user_id == caller_id and row.subscription_id is None for row in usage)
    assert all(row.cost_usd == Decimal("0.0500") and row.creator_royalty_usd == Decimal("0.0350") for row in usage)
    assert len(logs) == 2
    assert logs[0].prev_hash == GENESIS_HASH
    assert logs[1].prev_hash == logs[0].event_hash
    assert logs[0].id == data["invocationId"]


@pytest.mark.asyncio
async def test_freeform_knowledge_yields_placeholder_offline() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers, rules="Always favour enterprise deals over consumer ones.")
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "Should we sign?"}
        )
    conclusion = resp.json()["data"]["conclusion"]
    assert resp.json()["data"]["mode"] == "offline"
    assert "Should we sign?" in conclusion
    assert "favour" not in conclusion


@pytest.mark.asyncio
async def test_included_call_increments_subscription() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, headers, user_id, _key = await create_test_api_key(tier="pro")
    subscription_id = await seed_subscription(user_id, tier="pro", calls_used=4, calls_limit=500)
    async with _client() as client:
        package = await _publish(client, author_headers)
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
        )

    assert resp.status_code == 200
    assert resp.json()["data"]["isOverage"] is False
    assert resp.json()["data"]["costUsd"] == "0.0000"
    usage, _logs = await _ledger_rows(package["id"])
    assert len(usage) == 1
    assert usage[0].cost_usd == Decimal("0")
    assert usage[0].is_overage is False
    assert usage[0].subscription_id == subscription_id
    async with SessionLocal() as session:
        subscription = await session.get(Subscription, subscription_id)
    assert subscription.calls_used == 5


@pytest.mark.asyncio
async def test_overage_call_is_billed_without_increment() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, headers, user_id, _key = await create_test_api_key(tier="pro")
    subscription_id = await seed_subscription(user_id, tier="pro", calls_used=500, calls_limit=500)
    async with _client() as client:
        package = await _publish(client, author_headers)
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
        )

    assert resp.status_code == 200
    usage, _logs = await _ledger_rows(package["id"])
    assert len(usage) == 1
    assert usage[0].cost_usd == Decimal("0.0500")
    assert usage[0].is_overage is True
    assert usage[0].subscription_id == subscription_id
    async with SessionLocal() as session:
        subscription = await session.get(Subscription, subscription_id)
    assert subscription.calls_used == 500


@pytest.mark.asyncio
async def test_concurrent_invokes_keep_chain_and_quota_consistent() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    callers: list[tuple[dict[str, str], str]] = []
    for index in range(8):
        _raw, headers, user_id, _key = await create_test_api_key(tier="pro")
        # The last two callers are already at their limit and go to overage.
        used = 500 if index >= 6 else 0
        subscription_id = await seed_subscription(user_id, tier="pro", calls_used=used, calls_limit=500)
        callers.append((headers, subscription_id))

    async with _client() as client:
        package = await _publish(client, author_headers)
        responses = await asyncio.gather(
            *[
                client.post(
                    f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
                )
                for headers, _subscription_id in callers
                for _ in range(3)
            ]
        )

    assert [resp.status_code for resp in responses] == [200] * 24
    subscription_ids = [subscription_id for _headers, subscription_id in callers]
    async with SessionLocal() as session:
        report = await verify_chain(session, package["id"])
        subscriptions = (
            await session.execute(select(Subscription).where(Subscription.id.in_(subscription_ids)))
        ).scalars().all()
    usage, _logs = await _ledger_rows(package["id"])

    assert report.valid is True
    assert report.entries == 24
    included = [row for row in usage if not row.is_overage and row.subscription_id is not None]
    increments = sum(subscription.calls_used for subscription in subscriptions) - 2 * 500
    assert increments == len(included) == 18
    assert len([row for row in usage if row.is_overage]) == 6


@pytest.mark.asyncio
async def test_platform_mode_sends_only_the_skeleton(monkeypatch) -> None:
    monkeypatch.setenv("REASONER_CREDENTIAL", "platform-cred")
    get_settings.cache_clear()
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append({"key": request.headers["x-api-key"], "body": json.loads(request.content)})
        return httpx.Response(200, json={"content": [{"type": "text", "text": "Looks like a strong fit."}]})

    _use_reasoner(monkeypatch, handler)
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, author_headers)
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
        )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["mode"] == "platform"
    assert data["conclusion"] == "Looks like a strong fit."
    assert data["privacyNotice"].startswith("PLATFORM MODE")
    assert len(sent) == 1
    assert sent[0]["key"] == "platform-cred"
    wire = json.dumps(sent[0]["body"])
    for secret in ("secret-rule-1", "secret-rule-2", "bank", "0.9"):
        assert secret not in wire
    assert "strong_signal" in wire


@pytest.mark.asyncio
async def test_tenant_credential_is_author_only(monkeypatch) -> None:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"content": [{"type": "text", "text": "author answer"}]})

    _use_reasoner(monkeypatch, handler)
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, other_headers, _other_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, author_headers)
        forbidden = await client.post(
            f"/v1/security/invoke/{package['slug']}",
            headers=other_headers,
            json={"query": "enterprise", "overrideCredential": "someone-elses-key"},
        )
        allowed = await client.post(
            f"/v1/security/invoke/{package['slug']}",
            headers=author_headers,
            json={"query": "enterprise", "overrideCredential": "author-key"},
        )

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["data"]["mode"] == "tenant_credential"
    assert allowed.json()["data"]["privacyNotice"].startswith("TENANT CREDENTIAL MODE")
    assert len(sent) == 1
    assert sent[0]["system"] == RULES


@pytest.mark.asyncio
async def test_reasoner_failure_returns_503_without_ledger_writes(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, json={"error": "overloaded"})

    _use_reasoner(monkeypatch, handler)
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers)
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}",
            headers=headers,
            json={"query": "enterprise", "overrideCredential": "author-key"},
        )

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "REASONER_UNAVAILABLE"
    assert resp.headers["Retry-After"] == "5"
    usage, logs = await _ledger_rows(package["id"])
    assert usage == []
    assert logs == []


@pytest.mark.asyncio
async def test_deadline_expiry_aborts_without_writes(monkeypatch) -> None:
    monkeypatch.setenv("REQUEST_DEADLINE_MS", "100")
    get_settings.cache_clear()

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"content": []})

    _use_reasoner(monkeypatch, handler)
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers)
        resp = await client.post(
            f"/v1/security/invoke/{package['slug']}",
            headers=headers,
            json={"query": "enterprise", "overrideCredential": "author-key"},
        )

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "SERVICE_UNAVAILABLE"
    usage, logs = await _ledger_rows(package["id"])
    assert usage == []
    assert logs == []


@pytest.mark.asyncio
async def test_tampered_ciphertext_is_an_opaque_internal_error() -> None:
    _raw, headers, user_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await _publish(client, headers)
        async with SessionLocal() as session:
            row = (
                await session.execute(
                    select(EncryptedKnowledge).where(EncryptedKnowledge.package_id == package["id"])
                )
            ).scalar_one()
            tampered = bytearray(row.ciphertext)
            tampered[-1] ^= 0xFF
            await session.execute(
                update(EncryptedKnowledge)
                .where(EncryptedKnowledge.id == row.id)
                .values(ciphertext=bytes(tampered))
            )
            await session.commit()

        read_back = await client.get(f"/v1/security/knowledge/{package['slug']}", headers=headers)
        invoke = await client.post(
            f"/v1/security/invoke/{package['slug']}", headers=headers, json={"query": "enterprise"}
        )

    for resp in (read_back, invoke):
        assert resp.status_code == 500
        assert resp.json()["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    usage, logs = await _ledger_rows(package["id"])
    assert usage == []
    assert logs == []
    async with SessionLocal() as session:
        failures = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.event_type == "crypto.auth_failure",
                    AuditEvent.resource_id == package["id"],
                )
            )
        ).scalars().all()
    assert len(failures) == 2
    assert all(event.actor_id == user_id for event in failures)
