from __future__ import annotations

import json
from pathlib import Path
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
from fastapi.testclient import TestClient

from allad.config import Settings
from allad.repo import Repo
from allad.tokens.cache import MemoryTokenCache
from allad.web.app import create_app

TEAM = {"X-Team-Id": "team-1", "X-User-Id": "user-1"}


def _settings_for_db(db_path: Path, **overrides) -> Settings:
    values = dict(
        db_path=db_path,
        timezone="Asia/Seoul",
        web_host="127.0.0.1",
        web_port=0,
        site_url="http://app.test",
        oauth_clients={"google": ("gid", "gsec"), "meta": ("mid", "msec")},
    )
    values.update(overrides)
    return Settings(**values)


def _client(tmp_path: Path, handler=None, **overrides) -> tuple[TestClient, Repo]:
    db_path = tmp_path / "allad.sqlite3"
    transport = httpx.MockTransport(handler or (lambda r: httpx.Response(500)))
    app = create_app(_settings_for_db(db_path, **overrides), transport=transport, cache=MemoryTokenCache())
    return TestClient(app), Repo(db_path)


def test_health(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_team_header_is_required(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)
    resp = client.post("/api/sync/google")
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "missing X-Team-Id"}


def test_sync_without_credential_returns_structured_failure(tmp_path: Path) -> None:
    client, repo = _client(tmp_path)

    resp = client.post("/api/sync/naver", headers=TEAM)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert "No active naver credential" in body["error"]
    assert repo.list_sync_logs("team-1")[0]["status"] == "failed"


def test_status_change_rejects_non_boolean(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)

    resp = client.post("/api/campaigns/google/123/status", headers=TEAM, json={"is_active": "maybe"})

    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_cron_unknown_job_is_404(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)
    resp = client.post("/cron/reticulate-splines")
    assert resp.status_code == 404
    assert "reticulate-splines" in resp.json()["error"]


def test_cron_secret_is_enforced(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path, cron_secret="s3cret")

    assert client.post("/cron/refresh-oauth-tokens").status_code == 401
    resp = client.post("/cron/refresh-oauth-tokens", headers={"X-Cron-Secret": "s3cret"})
    assert resp.status_code == 200
    assert resp.json()["processed"] == 0


def test_authorize_then_callback_connects_google_account(tmp_path: Path) -> None:
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "oauth2.googleapis.com"
        seen.append(dict(parse_qsl(request.content.decode())))
        return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3599})

    client, repo = _client(tmp_path, handler)

    resp = client.get("/api/auth/google/authorize?account_id=1234567890", headers=TEAM, follow_redirects=False)
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert location.netloc == "accounts.google.com"
    state = parse_qs(location.query)["state"][0]
    assert repo.get_meta(f"oauth_state:{state}") is not None

    resp = client.get(f"/api/auth/callback/google-ads?code=the-code&state={state}", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "http://app.test/settings?connected=google"

    assert seen[0]["grant_type"] == "authorization_code"
    assert seen[0]["code"] == "the-code"
    assert seen[0]["redirect_uri"] == "http://app.test/api/auth/callback/google-ads"

    [cred] = repo.list_credentials("team-1")
    assert cred["platform"] == "google"
    assert cred["customer_id"] == "1234567890"
    assert cred["credentials"]["refresh_token"] == "rt"
    assert cred["data"]["oauth_tokens"]["access_token"] == "at"
    assert cred["data"]["connected"] is True
    # state is single-use
    assert repo.get_meta(f"oauth_state:{state}") is None


def test_callback_with_unknown_state_redirects_with_error(tmp_path: Path) -> None:
    client, repo = _client(tmp_path)

    resp = client.get("/api/auth/callback/google-ads?code=c&state=forged", follow_redirects=False)

    assert resp.status_code == 303
    assert "error=invalid_state" in resp.headers["location"]
    assert repo.list_credentials("team-1") == []


def test_meta_authorize_uses_pkce(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)

    resp = client.get("/api/auth/meta/authorize", headers=TEAM, follow_redirects=False)

    assert resp.status_code == 302
    q = parse_qs(urlparse(resp.headers["location"]).query)
    assert q["code_challenge_method"] == ["S256"]
    assert len(q["code_challenge"][0]) == 43


def test_disconnect_of_foreign_credential_is_404(tmp_path: Path) -> None:
    client, repo = _client(tmp_path)
    cred_id = repo.save_credential(team_id="someone-else", platform="naver", account_id="1")

    resp = client.post(f"/api/credentials/{cred_id}/disconnect", headers=TEAM)

    assert resp.status_code == 404
    assert repo.get_credential(cred_id)["is_active"] is True


def _google_api(searched: list[str]):
    """Token endpoint plus a Google Ads API with one manager and one client account."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3599})
        if request.url.path.endswith("customers:listAccessibleCustomers"):
            return httpx.Response(200, json={"resourceNames": ["customers/1112223333", "customers/4445556666"]})
        searched.append(request.url.path)
        query = json.loads(request.content)["query"]
        cid = request.url.path.split("/")[3]
        if "FROM customer LIMIT 1" in query:
            manager = cid == "1112223333"
            name = "Agency MCC" if manager else "Shop"
            return httpx.Response(200, json={"results": [{"customer": {"id": cid, "descriptiveName": name, "manager": manager}}]})
        if "FROM campaign" in query:
            return httpx.Response(200, json={"results": [{"campaign": {"id": "77", "name": "Brand", "status": "ENABLED"}}]})
        return httpx.Response(404)

    return handler


def _connect(client: TestClient, query: str = "") -> str:
    resp = client.get(f"/api/auth/google/authorize{query}", headers=TEAM, follow_redirects=False)
    state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
    resp = client.get(f"/api/auth/callback/google-ads?code=the-code&state={state}", follow_redirects=False)
    assert resp.status_code == 303
    return resp.headers["location"]


def test_callback_without_account_picks_first_client_account_and_sync_targets_it(tmp_path: Path) -> None:
    searched: list[str] = []
    client, repo = _client(tmp_path, _google_api(searched), google_developer_token="dev")

    assert _connect(client) == "http://app.test/settings?connected=google"

    [cred] = repo.list_credentials("team-1")
    assert cred["account_id"] == "4445556666"
    assert cred["customer_id"] == "4445556666"
    assert cred["account_name"] == "Shop"

    searched.clear()
    resp = client.post("/api/sync/google", headers=TEAM)

    assert resp.json() == {"success": True, "count": 1}
    assert searched == ["/v20/customers/4445556666/googleAds:search"]


def test_callback_keeps_pending_account_when_discovery_fails(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3599})
        return httpx.Response(500, json={"error": {"message": "backend error"}})

    client, repo = _client(tmp_path, handler, google_developer_token="dev")

    assert _connect(client) == "http://app.test/settings?connected=google"

    [cred] = repo.list_credentials("team-1")
    assert cred["account_id"] == "default"
    assert cred["customer_id"] is None
    assert cred["data"]["oauth_tokens"]["access_token"] == "at"


def test_reconnect_keeps_settings_and_other_stored_secrets(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "at2", "refresh_token": "rt2", "expires_in": 3599})

    client, repo = _client(tmp_path, handler)
    cred_id = repo.save_credential(
        team_id="team-1",
        platform="google",
        account_id="1234567890",
        customer_id="1234567890",
        credentials={"refresh_token": "rt1", "developer_token": "own-dev"},
        settings={"login_customer_id": "999"},
    )

    _connect(client, "?account_id=1234567890")

    [cred] = repo.list_credentials("team-1")
    assert cred["id"] == cred_id
    assert cred["settings"] == {"login_customer_id": "999"}
    assert cred["credentials"] == {"refresh_token": "rt2", "developer_token": "own-dev"}
    assert cred["data"]["oauth_tokens"]["access_token"] == "at2"


def test_accounts_endpoint_lists_reachable_google_accounts(tmp_path: Path) -> None:
    client, repo = _client(tmp_path, _google_api([]), google_developer_token="dev")
    repo.save_credential(team_id="team-1", platform="google", account_id="default", credentials={"refresh_token": "rt"})

    resp = client.get("/api/accounts/google", headers=TEAM)

    body = resp.json()
    assert body["success"] is True
    assert [(a["id"], a["is_manager"]) for a in body["accounts"]] == [("1112223333", True), ("4445556666", False)]


def test_settings_patch_merges_and_removes_keys(tmp_path: Path) -> None:
    client, repo = _client(tmp_path)
    cred_id = repo.save_credential(
        team_id="team-1", platform="google", account_id="default", settings={"login_customer_id": "999", "label": "x"}
    )

    resp = client.patch(
        f"/api/credentials/{cred_id}/settings", headers=TEAM, json={"customer_id": "4445556666", "label": None}
    )

    assert resp.json() == {"success": True, "settings": {"login_customer_id": "999", "customer_id": "4445556666"}}
    assert repo.get_credential(cred_id)["settings"]["customer_id"] == "4445556666"


def test_settings_patch_of_foreign_credential_is_404(tmp_path: Path) -> None:
    client, repo = _client(tmp_path)
    cred_id = repo.save_credential(team_id="someone-else", platform="google", account_id="1", settings={"a": "1"})

    resp = client.patch(f"/api/credentials/{cred_id}/settings", headers=TEAM, json={"a": "2"})

    assert resp.status_code == 404
    assert repo.get_credential(cred_id)["settings"] == {"a": "1"}


def test_batch_status_requires_ids_and_flag(tmp_path: Path) -> None:
    client, _repo = _client(tmp_path)

    resp = client.post("/api/campaigns/meta/batch-status", headers=TEAM, json={"campaign_ids": [], "is_active": False})

    assert resp.status_code == 400
