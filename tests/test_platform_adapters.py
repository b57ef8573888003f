from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import hmac
import json
from datetime import date, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from allad.connectors.amazon_ads import AmazonAdsClient
from allad.connectors.base import (
    AmazonCredentials,
    CoupangCredentials,
    DateRange,
    KakaoCredentials,
    NaverCredentials,
    TikTokCredentials,
)
from allad.connectors.coupang import CoupangClient
from allad.connectors.kakao_moment import KakaoMomentClient
from allad.connectors.naver_searchad import NaverSearchAdClient
from allad.connectors.tiktok_ads import TikTokAdsClient
from allad.db import AdsDB
from allad.errors import PlatformApiError
from allad.repo import Repo
from allad.util import local_today


def test_naver_pause_sets_user_lock_with_signed_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"nccCampaignId": "cmp-1", "userLock": True})

    client = NaverSearchAdClient(transport=httpx.MockTransport(handler))
    client.set_credentials(NaverCredentials(api_key="key", api_secret="secret", customer_id="777"))

    assert asyncio.run(client.update_campaign_status(None, "cmp-1", "paused")) is True

    req = seen[0]
    assert req.method == "PUT"
    assert req.url.path == "/ncc/campaigns/cmp-1"
    assert req.url.params["fields"] == "userLock"
    assert json.loads(req.content) == {"nccCampaignId": "cmp-1", "userLock": True}
    assert req.headers["X-API-KEY"] == "key"
    assert req.headers["X-Customer"] == "777"
    msg = f"{req.headers['X-Timestamp']}.PUT./ncc/campaigns/cmp-1"
    expected = base64.b64encode(hmac.new(b"secret", msg.encode(), hashlib.sha256).digest()).decode()
    assert req.headers["X-Signature"] == expected


def test_naver_campaigns_survive_stats_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/stats":
            return httpx.Response(500, json={"title": "boom"})
        return httpx.Response(
            200,
            json=[
                {"nccCampaignId": "a", "name": "A", "status": "ELIGIBLE", "userLock": False, "useDailyBudget": True, "dailyBudget": 30000},
                {"nccCampaignId": "b", "name": "B", "status": "ELIGIBLE", "userLock": True},
            ],
        )

    client = NaverSearchAdClient(transport=httpx.MockTransport(handler))
    client.set_credentials(NaverCredentials(api_key="key", api_secret="secret", customer_id="777"))

    campaigns = asyncio.run(client.fetch_campaigns())

    assert [(c.id, c.status, c.budget, c.metrics) for c in campaigns] == [
        ("a", "active", 30000.0, None),
        ("b", "paused", None, None),
    ]


def test_tiktok_error_envelope_on_http_200_is_auth_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Access-Token"] == "tt"
        return httpx.Response(200, json={"code": 40100, "message": "Access token is expired", "data": {}})

    client = TikTokAdsClient(transport=httpx.MockTransport(handler))
    client.set_credentials(TikTokCredentials(access_token="tt", advertiser_id="adv-1"))

    with pytest.raises(PlatformApiError) as exc:
        asyncio.run(client.fetch_campaigns())

    assert exc.value.needs_reauth
    assert exc.value.code == 40100


def test_coupang_campaigns_come_from_manual_entries(tmp_path: Path) -> None:
    db_path = tmp_path / "allad.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    mid = repo.add_manual_campaign(team_id="t1", name="Rocket Deals", budget=50000)
    repo.add_manual_campaign(team_id="other", name="Not mine")

    client = CoupangClient(repo, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    client.set_credentials(CoupangCredentials(access_key="a", secret_key="s", vendor_id="A0001", team_id="t1"))

    [campaign] = asyncio.run(client.fetch_campaigns())
    assert (campaign.id, campaign.name, campaign.status, campaign.budget) == (mid, "Rocket Deals", "active", 50000.0)

    assert asyncio.run(client.update_campaign_status(None, mid, "paused")) is True
    assert repo.list_manual_campaigns("t1")[0]["status"] == "paused"


def test_coupang_cannot_change_another_teams_manual_campaign(tmp_path: Path) -> None:
    db_path = tmp_path / "allad.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    victim = repo.add_manual_campaign(team_id="victim", name="Rocket Deals", budget=50000)

    client = CoupangClient(repo, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    client.set_credentials(CoupangCredentials(access_key="a", secret_key="s", vendor_id="A0002", team_id="intruder"))

    assert asyncio.run(client.update_campaign_status(None, victim, "paused")) is False
    assert asyncio.run(client.update_campaign_budget(None, victim, 1.0)) is False

    [row] = repo.list_manual_campaigns("victim")
    assert (row["status"], row["budget"]) == ("active", 50000.0)


def test_coupang_connection_test_signs_with_cea() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(401, json={"message": "invalid signature"})

    client = CoupangClient(MagicMock(), transport=httpx.MockTransport(handler))
    client.set_credentials(CoupangCredentials(access_key="a", secret_key="s", vendor_id="A0001"))

    result = asyncio.run(client.test_connection())

    assert result.ok is False
    assert seen[0].url.path.endswith("/vendors/A0001/returnShippingCenters")
    assert seen[0].headers["Authorization"].startswith("CEA algorithm=HmacSHA256, access-key=a, signed-date=")


def test_tiktok_metric_window_ends_on_the_configured_local_day() -> None:
    reports: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/campaign/get/"):
            rows = [{"campaign_id": "9", "campaign_name": "Spring", "operation_status": "ENABLE", "budget": 30, "budget_mode": "BUDGET_MODE_DAY"}]
            return httpx.Response(200, json={"code": 0, "data": {"list": rows, "page_info": {"total_page": 1}}})
        reports.append(request)
        rows = [{"dimensions": {"campaign_id": "9"}, "metrics": {"spend": "12.5", "impressions": "300", "clicks": "9"}}]
        return httpx.Response(200, json={"code": 0, "data": {"list": rows, "page_info": {"total_page": 1}}})

    client = TikTokAdsClient(transport=httpx.MockTransport(handler))
    # UTC+14: the local date is ahead of the host's for most of the day
    client.set_credentials(TikTokCredentials(access_token="tt", advertiser_id="adv-1", timezone="Pacific/Kiritimati"))

    [campaign] = asyncio.run(client.fetch_campaigns())

    end = local_today("Pacific/Kiritimati")
    assert reports[0].url.params["end_date"] == end.isoformat()
    assert reports[0].url.params["start_date"] == (end - timedelta(days=29)).isoformat()
    assert (campaign.status, campaign.budget_type, campaign.metrics.cost, campaign.metrics.impressions) == ("active", "daily", 12.5, 300)


def _kakao_client(handler) -> KakaoMomentClient:
    client = KakaoMomentClient(transport=httpx.MockTransport(handler))
    client.set_credentials(KakaoCredentials(access_token="kt", account_id="5001"))
    return client


def test_kakao_campaigns_carry_report_metrics_and_account_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/campaigns/report"):
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "dimensions": {"campaign_id": "11"},
                            "metrics": {"imp": 100, "click": 5, "cost": 1200, "conv_purchase_7d": 1, "conv_purchase_p_7d": 30000},
                        }
                    ]
                },
            )
        return httpx.Response(
            200,
            json={
                "content": [
                    {"id": 11, "name": "Brand", "config": "ON", "dailyBudgetAmount": 50000},
                    {"id": 12, "name": "Retarget", "config": "OFF"},
                ]
            },
        )

    brand, retarget = asyncio.run(_kakao_client(handler).fetch_campaigns())

    assert all(r.headers["Authorization"] == "Bearer kt" and r.headers["adAccountId"] == "5001" for r in seen)
    assert seen[1].url.params["campaignId"] == "11,12"
    assert seen[1].url.params["datePreset"] == "LAST_30DAY"
    assert (brand.status, brand.budget, brand.metrics.clicks, brand.metrics.revenue) == ("active", 50000.0, 5, 30000.0)
    assert (retarget.status, retarget.budget, retarget.metrics) == ("paused", None, None)


def test_kakao_status_toggle_and_auth_rejection() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if body["id"] == 13:
            return httpx.Response(401, json={"code": -401, "msg": "invalid token"})
        return httpx.Response(200, json={})

    client = _kakao_client(handler)

    assert asyncio.run(client.update_campaign_status(None, "11", "paused")) is True
    assert bodies[0] == {"id": 11, "config": "OFF"}
    with pytest.raises(PlatformApiError) as exc:
        asyncio.run(client.update_campaign_status(None, "13", "active"))
    assert exc.value.needs_reauth


def test_kakao_daily_metrics_normalize_compact_dates() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        rows = [
            {"start": "20261002", "metrics": {"imp": 5, "cost": 100}},
            {"start": "20261001", "metrics": {"imp": 7, "cost": 300}},
        ]
        return httpx.Response(200, json={"data": rows})

    date_range = DateRange(start=date(2026, 10, 1), end=date(2026, 10, 2))
    series = asyncio.run(_kakao_client(handler).fetch_campaign_metrics(None, "11", date_range))

    assert (seen[0].url.params["start"], seen[0].url.params["end"], seen[0].url.params["timeUnit"]) == ("20261001", "20261002", "DAY")
    assert [(m.date, m.impressions, m.cost) for m in series] == [("2026-10-01", 7, 300.0), ("2026-10-02", 5, 100.0)]


def _amazon_client(handler, sleeps: list[float] | None = None, **bag) -> AmazonAdsClient:
    async def fake_sleep(sec: float) -> None:
        if sleeps is not None:
            sleeps.append(sec)

    client = AmazonAdsClient(transport=httpx.MockTransport(handler), sleep=fake_sleep)
    client.set_credentials(AmazonCredentials(access_token="az", client_id="amzn1.app", profile_id="3001", **bag))
    return client


def test_amazon_campaign_listing_pages_through_next_token_on_region_host() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if json.loads(request.content).get("nextToken") == "p2":
            return httpx.Response(200, json={"campaigns": [{"campaignId": 2, "name": "Auto", "state": "PAUSED"}]})
        first = {"campaignId": 1, "name": "Manual", "state": "ENABLED", "budget": {"budget": 25.0, "budgetType": "DAILY"}}
        return httpx.Response(200, json={"campaigns": [first], "nextToken": "p2"})

    manual, auto = asyncio.run(_amazon_client(handler, region="EU").fetch_campaigns())

    assert [r.url.host for r in seen] == ["advertising-api-eu.amazon.com"] * 2
    assert seen[0].headers["Amazon-Advertising-API-Scope"] == "3001"
    assert seen[0].headers["Amazon-Advertising-API-ClientId"] == "amzn1.app"
    assert seen[0].headers["Accept"] == "application/vnd.spCampaign.v3+json"
    assert (manual.id, manual.status, manual.budget, manual.budget_type) == ("1", "active", 25.0, "daily")
    assert (auto.id, auto.status, auto.budget) == ("2", "paused", None)


def test_amazon_daily_metrics_poll_report_then_download_gzip() -> None:
    sleeps: list[float] = []
    polls = iter(["PENDING", "COMPLETED"])
    report_rows = [
        {"date": "2026-10-02", "campaignId": 1, "impressions": 50, "clicks": 2, "cost": 3.5, "purchases7d": 1, "sales7d": 40.0},
        {"date": "2026-10-01", "campaignId": 1, "impressions": 70, "clicks": 4, "cost": 5.0, "purchases7d": 0, "sales7d": 0},
        {"date": "2026-10-01", "campaignId": 2, "impressions": 999, "clicks": 9, "cost": 9.0},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "reports.example":
            return httpx.Response(200, content=gzip.compress(json.dumps(report_rows).encode()))
        if request.method == "POST":
            body = json.loads(request.content)
            assert (body["startDate"], body["endDate"]) == ("2026-10-01", "2026-10-02")
            return httpx.Response(200, json={"reportId": "r-1"})
        state = next(polls)
        url = "https://reports.example/r-1.json.gz" if state == "COMPLETED" else None
        return httpx.Response(200, json={"reportId": "r-1", "status": state, "url": url})

    date_range = DateRange(start=date(2026, 10, 1), end=date(2026, 10, 2))
    series = asyncio.run(_amazon_client(handler, sleeps).fetch_campaign_metrics(None, "1", date_range))

    assert sleeps == [5.0]
    assert [(m.date, m.impressions, m.cost, m.revenue) for m in series] == [
        ("2026-10-01", 70, 5.0, 0.0),
        ("2026-10-02", 50, 3.5, 40.0),
    ]


def test_amazon_status_update_reads_per_item_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        [patch] = json.loads(request.content)["campaigns"]
        if patch["campaignId"] == "1":
            return httpx.Response(207, json={"campaigns": {"success": [{"campaignId": "1"}], "error": []}})
        return httpx.Response(207, json={"campaigns": {"success": [], "error": [{"index": 0, "errors": []}]}})

    client = _amazon_client(handler)

    assert asyncio.run(client.update_campaign_status(None, "1", "paused")) is True
    assert asyncio.run(client.update_campaign_status(None, "2", "paused")) is False
