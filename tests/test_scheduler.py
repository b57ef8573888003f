from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from allad.config import Settings
from allad.connectors.base import CampaignData
from allad.db import AdsDB
from allad.errors import PlatformApiError, UnknownJobError
from allad.oauth.configs import get_oauth_config
from allad.oauth.manager import OAuthManager
from allad.platforms import Platform
from allad.registry import PlatformServiceFactory
from allad.repo import Repo
from allad.scheduler import FULL, run_platform_sync_job, run_refresh_tokens_job, trigger_scheduled_job
from allad.sync import SyncOrchestrator
from allad.tokens.cache import MemoryTokenCache
from allad.tokens.store import TokenRecord, TokenStore
from allad.util import now_ms

_GOOGLE_BAG = {"client_id": "cid", "client_secret": "sec", "developer_token": "dev", "refresh_token": "r"}


class GoogleFake:
    def __init__(self):
        self.bag = None

    def set_credentials(self, bag):
        self.bag = bag

    async def fetch_campaigns(self, account_id=None):
        if self.bag.customer_id == "9999999999":
            raise PlatformApiError("google", "internal error", status_code=500)
        return [CampaignData(id="c1", name="Search", status="active", budget=5.0)]

    async def fetch_campaign_metrics(self, account_id, campaign_id, date_range):
        return []


def _orchestrator(tmp_path: Path, handler=None) -> SyncOrchestrator:
    db_path = tmp_path / "allad.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)
    store = TokenStore(MemoryTokenCache(), repo)
    settings = Settings(db_path=db_path, timezone="UTC", web_host="127.0.0.1", web_port=8010)
    transport = httpx.MockTransport(handler or (lambda r: httpx.Response(500)))

    def oauth_factory(platform: Platform) -> OAuthManager:
        return OAuthManager(
            get_oauth_config(platform),
            client_id="cid",
            client_secret="sec",
            redirect_uri="http://localhost/cb",
            token_store=store,
            repo=repo,
            transport=transport,
        )

    factory = PlatformServiceFactory()
    factory.register(Platform.GOOGLE, GoogleFake)
    return SyncOrchestrator(repo, factory, store, settings, oauth_factory=oauth_factory)


def test_unknown_job_is_rejected_before_any_work() -> None:
    orchestrator = MagicMock()

    with pytest.raises(UnknownJobError):
        asyncio.run(trigger_scheduled_job(orchestrator, "google-ads-sync-weekly"))

    assert orchestrator.method_calls == []


def test_platform_sync_job_reports_each_account(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    repo = orchestrator.repo
    repo.save_credential(
        team_id="t1", platform="google", account_id="google_t1_1234567890", account_name="Main", credentials=_GOOGLE_BAG
    )
    repo.save_credential(team_id="t2", platform="google", account_id="9999999999", credentials=_GOOGLE_BAG)

    out = asyncio.run(run_platform_sync_job(orchestrator, Platform.GOOGLE, FULL))

    assert out["success"] is True
    assert out["syncType"] == "full"
    assert out["processed"] == 2
    by_account = {r["accountId"]: r for r in out["results"]}
    assert by_account["1234567890"] == {
        "accountId": "1234567890",
        "accountName": "Main",
        "status": "synced",
        "campaigns_synced": 1,
    }
    assert by_account["9999999999"]["status"] == "error"
    assert "internal error" in by_account["9999999999"]["error"]

    assert len(repo.list_campaigns("t1", "google")) == 1
    assert repo.list_sync_logs("t1")[0]["sync_type"] == "full"
    assert repo.list_sync_logs("t2")[0]["status"] == "failed"


def test_hourly_job_name_runs_incremental_google_sync(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    out = asyncio.run(trigger_scheduled_job(orchestrator, "google-ads-sync-hourly"))

    assert out["syncType"] == "incremental"
    assert out["processed"] == 0
    assert out["results"] == []


def test_refresh_job_refreshes_expiring_and_deactivates_repeated_rejections(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "kauth.kakao.com":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    orchestrator = _orchestrator(tmp_path, handler)
    repo = orchestrator.repo
    expiring = repo.save_credential(team_id="t1", platform="google", account_id="111", credentials=_GOOGLE_BAG)
    # two rejections already recorded; this run's is the third
    broken = repo.save_credential(team_id="t1", platform="kakao", account_id="222", data={"refresh_failures": 2})
    healthy = repo.save_credential(team_id="t1", platform="google", account_id="333", credentials=_GOOGLE_BAG)
    naver = repo.save_credential(
        team_id="t1", platform="naver", account_id="444", credentials={"api_key": "k", "api_secret": "s"}
    )

    async def _run():
        soon = now_ms() + 10 * 60 * 1000
        later = now_ms() + 6 * 3600 * 1000
        for cred_id, expires_at in ((expiring, soon), (broken, soon), (healthy, later)):
            cred = repo.get_credential(cred_id)
            await orchestrator.token_store.put(
                orchestrator.scope_for(cred),
                TokenRecord(access_token="old", refresh_token="r", expires_at=expires_at),
            )
        return await trigger_scheduled_job(orchestrator, "refresh-oauth-tokens")

    out = asyncio.run(_run())

    statuses = {r["credentialId"]: r["status"] for r in out["results"]}
    assert statuses == {expiring: "refreshed", broken: "failed", healthy: "not_needed", naver: "skipped"}
    assert (out["refreshed"], out["failed"], out["not_needed"], out["skipped"]) == (1, 1, 1, 1)

    broken_row = repo.get_credential(broken)
    assert broken_row["is_active"] is False
    assert broken_row["data"]["refresh_error"] == "token refresh rejected"
    assert broken_row["data"]["refresh_failures"] == 3
    assert broken_row["last_error"] == "kakao needs reconnection"

    assert repo.get_credential(expiring)["data"]["oauth_tokens"]["access_token"] == "fresh"


def _expiring_kakao(orchestrator: SyncOrchestrator, **save) -> str:
    repo = orchestrator.repo
    cred_id = repo.save_credential(team_id="t1", platform="kakao", account_id="222", **save)
    scope = orchestrator.scope_for(repo.get_credential(cred_id))
    record = TokenRecord(access_token="old", refresh_token="r", expires_at=now_ms() + 10 * 60 * 1000)
    asyncio.run(orchestrator.token_store.put(scope, record))
    return cred_id


def test_first_rejected_refresh_keeps_credential_active(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
    cred_id = _expiring_kakao(orchestrator)

    out = asyncio.run(run_refresh_tokens_job(orchestrator))

    assert out["failed"] == 1
    row = orchestrator.repo.get_credential(cred_id)
    assert row["is_active"] is True
    assert row["data"]["refresh_failures"] == 1
    assert row["last_error"] is None


def test_network_failure_during_refresh_is_not_counted_against_the_grant(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    orchestrator = _orchestrator(tmp_path, handler)
    cred_id = _expiring_kakao(orchestrator, data={"refresh_failures": 2})

    out = asyncio.run(run_refresh_tokens_job(orchestrator))

    assert out["results"][0]["status"] == "failed"
    row = orchestrator.repo.get_credential(cred_id)
    assert row["is_active"] is True
    assert row["data"]["refresh_failures"] == 2
    assert row["data"]["refresh_error"].startswith("ConnectTimeout")
    assert row["data"]["oauth_tokens"]["access_token"] == "old"


def test_successful_refresh_clears_recorded_failures(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, lambda r: httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600}))
    cred_id = _expiring_kakao(orchestrator, data={"refresh_failures": 2, "refresh_error": "token refresh rejected"})

    out = asyncio.run(run_refresh_tokens_job(orchestrator))

    assert out["refreshed"] == 1
    data = orchestrator.repo.get_credential(cred_id)["data"]
    assert data["refresh_failures"] == 0
    assert data["refresh_error"] is None
    assert data["oauth_tokens"]["access_token"] == "fresh"
