from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from allad.config import Settings
from allad.connectors.base import GoogleCredentials
from allad.connectors.google_ads import GoogleAdsClient
from allad.db import AdsDB
from allad.errors import AuthConfigError, PlatformApiError
from allad.registry import default_factory
from allad.repo import Repo
from allad.sync import RequestContext, SyncOrchestrator
from allad.tokens.cache import MemoryTokenCache
from allad.tokens.store import TokenStore


def _creds(**overrides) -> GoogleCredentials:
    base = dict(
        client_id="cid",
        client_secret="sec",
        developer_token="dev",
        refresh_token="r",
        customer_id="123",
        login_customer_id="456",
        access_token="tok",
    )
    base.update(overrides)
    return GoogleCredentials(**base)


def _client(handler) -> GoogleAdsClient:
    client = GoogleAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(_creds())
    return client


def test_fetch_accounts_merges_hierarchy_and_current_account() -> None:
    seen: list[tuple[str, dict[str, str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, dict(request.headers)))
        query = json.loads(request.content)["query"]
        if request.url.path.endswith("/customers/456/googleAds:search"):
            assert "FROM customer_client" in query
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"customerClient": {"id": "123", "descriptiveName": "Shop", "manager": False, "level": "1"}},
                        {"customerClient": {"id": "456", "descriptiveName": "Agency", "manager": True, "level": "0"}},
                    ]
                },
            )
        if request.url.path.endswith("/customers/123/googleAds:search"):
            return httpx.Response(
                200, json={"results": [{"customer": {"id": "123", "descriptiveName": "Shop", "manager": False}}]}
            )
        return httpx.Response(404)

    accounts = asyncio.run(_client(handler).fetch_accounts())

    assert [a.id for a in accounts] == ["456", "123"]
    assert accounts[0].is_manager is True
    headers = seen[0][1]
    assert headers["developer-token"] == "dev"
    assert headers["login-customer-id"] == "456"
    assert headers["authorization"] == "Bearer tok"


def test_fetch_accounts_falls_back_to_current_account_query() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "/customers/456/" in request.url.path:
            return httpx.Response(400, json={"error": {"code": 400, "message": "bad field"}})
        return httpx.Response(
            200, json={"results": [{"customer": {"id": "123", "descriptiveName": "Shop", "manager": False}}]}
        )

    accounts = asyncio.run(_client(handler).fetch_accounts())
    assert [a.id for a in accounts] == ["123"]


def test_auth_errors_propagate_from_account_listing() -> None:
    client = _client(lambda r: httpx.Response(401, json={"error": {"code": 401, "message": "expired"}}))
    with pytest.raises(PlatformApiError) as exc:
        asyncio.run(client.fetch_accounts())
    assert exc.value.needs_reauth


def test_fetch_campaigns_converts_micros() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "results": [
                    {
                        "campaign": {"id": "999", "name": "Brand", "status": "ENABLED"},
                        "campaignBudget": {"amountMicros": "15000000"},
                        "metrics": {
                            "impressions": "1000",
                            "clicks": "25",
                            "costMicros": "12345678",
                            "conversions": 2.0,
                            "conversionsValue": 99.5,
                        },
                    }
                ]
            },
        )

    [c] = asyncio.run(_client(handler).fetch_campaigns())
    assert c.id == "999"
    assert c.status == "active"
    assert c.budget == 15.0
    assert c.metrics.impressions == 1000
    assert abs(c.metrics.cost - 12.345678) < 1e-9


def test_update_status_sends_enabled_and_updates_stored_campaign(tmp_path: Path) -> None:
    db_path = tmp_path / "allad.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    cred_id = repo.save_credential(
        team_id="T",
        platform="google",
        account_id="123",
        customer_id="123",
        credentials={
            "client_id": "cid",
            "client_secret": "sec",
            "developer_token": "dev",
            "refresh_token": "r",
            "login_customer_id": "456",
            "access_token": "tok",
        },
    )
    repo.upsert_campaign(
        team_id="T",
        platform="google",
        platform_campaign_id="999",
        credential_id=cred_id,
        name="Brand",
        status="paused",
        is_active=False,
        budget=None,
        budget_type=None,
    )

    mutations: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path.endswith("/customers/123/googleAds:search"):
            return httpx.Response(200, json={"results": [{"campaign": {"id": "999", "status": "PAUSED"}}]})
        if request.url.path.endswith("/customers/123/googleAds:mutate"):
            mutations.append(body)
            return httpx.Response(200, json={"mutateOperationResponses": [{}]})
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    settings = Settings(db_path=db_path, timezone="Asia/Seoul", web_host="127.0.0.1", web_port=8010)
    orchestrator = SyncOrchestrator(
        repo,
        default_factory(repo, transport=transport),
        TokenStore(MemoryTokenCache(), repo),
        settings,
        transport=transport,
    )

    out = asyncio.run(orchestrator.update_campaign_status(RequestContext(team_id="T"), "google", "999", True))

    assert out == {"success": True}
    [op] = mutations[0]["mutateOperations"]
    assert op["campaignOperation"]["update"]["status"] == "ENABLED"
    assert op["campaignOperation"]["update"]["resourceName"] == "customers/123/campaigns/999"
    assert op["campaignOperation"]["updateMask"] == "status"

    row = repo.get_campaign("T", "google", "999")
    assert row["is_active"] == 1
    assert row["status"] == "active"


def test_mints_access_token_from_refresh_token_when_none_given() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "minted", "expires_in": 3600})
        assert request.headers["authorization"] == "Bearer minted"
        return httpx.Response(200, json={"results": []})

    client = GoogleAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(_creds(access_token=None, login_customer_id=None))
    asyncio.run(client.fetch_campaigns())

    assert calls == ["oauth2.googleapis.com", "googleads.googleapis.com"]


def test_accounts_are_discovered_when_no_customer_id_is_known() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("customers:listAccessibleCustomers"):
            return httpx.Response(200, json={"resourceNames": ["customers/111", "customers/222", "customers/333"]})
        cid = request.url.path.split("/")[3]
        if cid == "222":
            return httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED", "message": "CUSTOMER_NOT_ENABLED"}})
        return httpx.Response(200, json={"results": [{"customer": {"id": cid, "descriptiveName": f"Acct {cid}"}}]})

    client = GoogleAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(_creds(customer_id="", login_customer_id=None))

    accounts = asyncio.run(client.fetch_accounts())

    assert [a.id for a in accounts] == ["111", "333"]
    assert seen[0].method == "GET"
    assert "login-customer-id" not in seen[0].headers
    assert seen[0].headers["developer-token"] == "dev"


def test_unauthorized_token_aborts_discovery() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("customers:listAccessibleCustomers"):
            return httpx.Response(200, json={"resourceNames": ["customers/111"]})
        return httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}})

    client = GoogleAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(_creds(customer_id="", login_customer_id=None))

    with pytest.raises(PlatformApiError) as exc:
        asyncio.run(client.fetch_accounts())
    assert exc.value.needs_reauth


def test_campaign_calls_without_any_customer_id_fail_before_the_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"results": []})

    client = GoogleAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(_creds(customer_id="", login_customer_id=None))

    with pytest.raises(AuthConfigError) as exc:
        asyncio.run(client.fetch_campaigns())
    assert exc.value.missing == ["customer_id"]
    assert seen == []
