from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from skillmint.apps.api.main import create_app
from skillmint.tests.utils.auth import create_test_api_key
from skillmint.tests.utils.market import create_package_via_api, unique_slug


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_create_package_binds_author_from_key() -> None:
    _raw, headers, user_id, _key = await create_test_api_key(display_name="Ada")
    async with _client() as client:
        data = await create_package_via_api(client, headers, priceUsd="9.99")
        fetched = await client.get(f"/v1/packages/{data['id']}", headers=headers)
        by_slug = await client.get(f"/v1/packages/by-slug/{data['slug']}", headers=headers)
        mine = await client.get("/v1/packages/mine", headers=headers)

    assert data["authorUserId"] == user_id
    assert data["authorName"] == "Ada"
    assert data["status"] == "active"
    assert data["installCount"] == 0
    assert data["priceUsd"] == "9.99"
    assert fetched.json()["data"]["slug"] == data["slug"]
    assert by_slug.json()["data"]["id"] == data["id"]
    assert [item["id"] for item in mine.json()["data"]] == [data["id"]]
    assert fetched.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_duplicate_slug_conflicts() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    slug = unique_slug()
    async with _client() as client:
        await create_package_via_api(client, headers, slug=slug)
        resp = await client.post(
            "/v1/packages",
            headers=headers,
            json={"slug": slug, "version": "2.0.0", "displayName": "Other", "description": "Other"},
        )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "SLUG_TAKEN"


@pytest.mark.asyncio
async def test_create_package_validates_payload() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    async with _client() as client:
        bad_slug = await client.post(
            "/v1/packages",
            headers=headers,
            json={"slug": "Not A Slug", "version": "1", "displayName": "x", "description": "x"},
        )
        negative_price = await client.post(
            "/v1/packages",
            headers=headers,
            json={"slug": unique_slug(), "version": "1", "displayName": "x", "description": "x", "priceUsd": "-1"},
        )
        smuggled_owner = await client.post(
            "/v1/packages",
            headers=headers,
            json={
                "slug": unique_slug(),
                "version": "1",
                "displayName": "x",
                "description": "x",
                "authorUserId": "someone-else",
            },
        )
    for resp in (bad_slug, negative_price, smuggled_owner):
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_only_author_may_patch_and_authors_cannot_ban() -> None:
    _raw, author_headers, _author_id, _key = await create_test_api_key()
    _raw, other_headers, _other_id, _key = await create_test_api_key()
    async with _client() as client:
        package = await create_package_via_api(client, author_headers)
        forbidden = await client.patch(
            f"/v1/packages/{package['id']}", headers=other_headers, json={"displayName": "Hijacked"}
        )
        updated = await client.patch(
            f"/v1/packages/{package['id']}",
            headers=author_headers,
            json={"displayName": "Deal Evaluator Pro", "version": "1.1.0", "tags": ["sales", "b2b", "sales"]},
        )
        archived = await client.patch(
            f"/v1/packages/{package['id']}", headers=author_headers, json={"status": "archived"}
        )
        banned = await client.patch(
            f"/v1/packages/{package['id']}", headers=author_headers, json={"status": "banned"}
        )
        missing = await client.patch("/v1/packages/missing", headers=author_headers, json={"version": "2"})

    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "NOT_PACKAGE_AUTHOR"
    assert updated.status_code == 200
    assert updated.json()["data"]["displayName"] == "Deal Evaluator Pro"
    assert updated.json()["data"]["version"] == "1.1.0"
    assert sorted(updated.json()["data"]["tags"]) == ["b2b", "sales"]
    assert archived.json()["data"]["status"] == "archived"
    assert banned.status_code == 403
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_search_filters_sorts_and_paginates() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    marker = uuid4().hex[:10]
    async with _client() as client:
        cheap = await create_package_via_api(
            client,
            headers,
            displayName=f"Alpha {marker}",
            category="finance",
            license="open-source",
            maturity="stable",
            tags=[marker, "budget"],
            priceUsd="0",
        )
        pricey = await create_package_via_api(
            client,
            headers,
            displayName=f"Beta {marker}",
            category="finance",
            license="commercial",
            maturity="beta",
            tags=[marker],
            priceUsd="49.00",
        )
        shelved = await create_package_via_api(client, headers, displayName=f"Gamma {marker}", tags=[marker])
        await client.patch(f"/v1/packages/{shelved['id']}", headers=headers, json={"status": "archived"})

        by_text = await client.get("/v1/packages", headers=headers, params={"q": marker.upper(), "sort": "name"})
        by_tag = await client.get("/v1/packages", headers=headers, params={"tags": "budget", "q": marker})
        by_license = await client.get(
            "/v1/packages", headers=headers, params={"q": marker, "license": "commercial"}
        )
        by_price = await client.get("/v1/packages", headers=headers, params={"q": marker, "maxPriceUsd": "10"})
        paged = await client.get(
            "/v1/packages", headers=headers, params={"q": marker, "sort": "name", "limit": 1, "offset": 1}
        )
        too_many = await client.get("/v1/packages", headers=headers, params={"limit": 101})
        negative = await client.get("/v1/packages", headers=headers, params={"offset": -1})

    text_page = by_text.json()["data"]
    assert text_page["total"] == 2
    assert [item["id"] for item in text_page["items"]] == [cheap["id"], pricey["id"]]
    assert [item["id"] for item in by_tag.json()["data"]["items"]] == [cheap["id"]]
    assert [item["id"] for item in by_license.json()["data"]["items"]] == [pricey["id"]]
    assert [item["id"] for item in by_price.json()["data"]["items"]] == [cheap["id"]]
    paged_data = paged.json()["data"]
    assert paged_data["total"] == 2
    assert [item["id"] for item in paged_data["items"]] == [pricey["id"]]
    assert too_many.status_code == 422
    assert negative.status_code == 422


@pytest.mark.asyncio
async def test_requests_without_valid_key_are_rejected() -> None:
    _raw, revoked_headers, _u1, _k1 = await create_test_api_key(key_revoked=True)
    _raw, expired_headers, _u2, _k2 = await create_test_api_key(key_expires_at=1)
    _raw, inactive_headers, _u3, _k3 = await create_test_api_key(user_active=False)
    async with _client() as client:
        missing = await client.get("/v1/packages")
        garbage = await client.get("/v1/packages", headers={"Authorization": "Bearer smk_nope"})
        wrong_scheme = await client.get("/v1/packages", headers={"Authorization": "Basic abc"})
        revoked = await client.get("/v1/packages", headers=revoked_headers)
        expired = await client.get("/v1/packages", headers=expired_headers)
        inactive = await client.get("/v1/packages", headers=inactive_headers)
        health = await client.get("/v1/health")

    for resp in (missing, garbage, wrong_scheme, revoked, expired, inactive):
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert health.status_code == 200
    assert health.json()["data"]["status"] == "ok"


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally() -> None:
    _raw, headers, _user_id, _key = await create_test_api_key()
    marker = uuid4().hex[:8]
    async with _client() as client:
        discount = await create_package_via_api(client, headers, displayName=f"{marker} 50% off")
        await create_package_via_api(client, headers, displayName=f"{marker} 500 units")
        await create_package_via_api(client, headers, displayName=f"{marker} snake-case")
        underscored = await create_package_via_api(client, headers, displayName=f"{marker} snake_case")
        percent = await client.get("/v1/packages", headers=headers, params={"q": f"{marker} 50%"})
        underscore = await client.get("/v1/packages", headers=headers, params={"q": f"{marker} snake_"})

    assert [item["id"] for item in percent.json()["data"]["items"]] == [discount["id"]]
    assert [item["id"] for item in underscore.json()["data"]["items"]] == [underscored["id"]]
