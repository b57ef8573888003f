from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from allad.config import Settings
from allad.db import AdsDB
from allad.errors import (
    AllAdError,
    AuthConfigError,
    CredentialNotFoundError,
    TokenExchangeError,
    UnknownJobError,
    UnknownPlatformError,
)
from allad.oauth.configs import get_oauth_config
from allad.platforms import Platform, parse_platform
from allad.scheduler import trigger_scheduled_job
from allad.sync import PENDING_ACCOUNT_ID, RequestContext, build_orchestrator
from allad.tokens.cache import TokenCache
from allad.util import new_id, now_utc_iso

logger = logging.getLogger(__name__)

_STATE_PREFIX = "oauth_state:"


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _context(request: Request) -> RequestContext | None:
    team_id = (request.headers.get("x-team-id") or "").strip()
    if not team_id:
        return None
    return RequestContext(
        team_id=team_id,
        user_id=(request.headers.get("x-user-id") or "").strip() or None,
        auth_token=(request.headers.get("authorization") or "").strip() or None,
    )


def _unauthorized() -> JSONResponse:
    return JSONResponse({"success": False, "error": "missing X-Team-Id"}, status_code=401)


def _pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).decode("ascii").rstrip("=")
    return verifier, challenge


def create_app(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: TokenCache | None = None,
) -> FastAPI:
    AdsDB(settings.db_path).init()
    orchestrator = build_orchestrator(settings, transport=transport, cache=cache)
    repo = orchestrator.repo

    app = FastAPI(title="All-AD")
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _site_redirect(**params: str) -> RedirectResponse:
        return RedirectResponse(url=f"{settings.site_url.rstrip('/')}/settings?{urlencode(params)}", status_code=303)

    @app.get("/health")
    def health():
        return {"ok": True, "time": now_utc_iso()}

    # ---- sync ----

    @app.post("/api/sync/{platform}")
    async def sync_platform(platform: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return await orchestrator.sync_platform_campaigns(ctx, platform)

    @app.post("/api/sync")
    async def sync_all(request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return {"results": await orchestrator.sync_all_platforms(ctx)}

    @app.get("/api/sync/logs")
    def sync_logs(request: Request, platform: str | None = None, limit: int = 50):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return {"logs": repo.list_sync_logs(ctx.team_id, platform, limit=max(1, min(limit, 500)))}

    # ---- campaigns ----

    @app.get("/api/campaigns")
    def list_campaigns(request: Request, platform: str | None = None):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return {"campaigns": repo.list_campaigns(ctx.team_id, platform)}

    @app.post("/api/campaigns/{platform}/{campaign_id}/status")
    async def campaign_status(platform: str, campaign_id: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        is_active = _to_bool(payload.get("is_active")) if isinstance(payload, dict) else None
        if is_active is None:
            return JSONResponse({"success": False, "error": "is_active must be a boolean"}, status_code=400)
        return await orchestrator.update_campaign_status(ctx, platform, campaign_id, is_active)

    @app.post("/api/campaigns/{platform}/{campaign_id}/budget")
    async def campaign_budget(platform: str, campaign_id: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            payload = await request.json()
            amount = float(payload["amount"])
        except (ValueError, TypeError, KeyError):
            return JSONResponse({"success": False, "error": "amount must be a number"}, status_code=400)
        if amount <= 0:
            return JSONResponse({"success": False, "error": "amount must be > 0"}, status_code=400)
        return await orchestrator.update_campaign_budget(ctx, platform, campaign_id, amount)

    @app.post("/api/campaigns/{platform}/batch-status")
    async def campaign_batch_status(platform: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        ids = payload.get("campaign_ids")
        is_active = _to_bool(payload.get("is_active"))
        if not isinstance(ids, list) or not ids or is_active is None:
            return JSONResponse(
                {"success": False, "error": "campaign_ids (non-empty list) and is_active are required"},
                status_code=400,
            )
        return await orchestrator.batch_update_campaign_status(ctx, platform, [str(i) for i in ids], is_active)

    # ---- credentials ----

    @app.get("/api/credentials")
    async def credentials(request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return {"credentials": await orchestrator.connection_status(ctx)}

    @app.get("/api/accounts/{platform}")
    async def accounts(platform: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        return await orchestrator.list_accounts(ctx, platform)

    @app.patch("/api/credentials/{credential_id}/settings")
    async def credential_settings(credential_id: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            patch = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        if not isinstance(patch, dict) or not patch:
            return JSONResponse({"success": False, "error": "settings must be a non-empty object"}, status_code=400)
        try:
            updated = orchestrator.update_credential_settings(ctx, credential_id, patch)
        except CredentialNotFoundError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        return {"success": True, "settings": updated}

    @app.post("/api/credentials/{credential_id}/disconnect")
    async def disconnect(credential_id: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            await orchestrator.disconnect_credential(ctx, credential_id)
        except CredentialNotFoundError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        return {"success": True}

    @app.delete("/api/credentials/{credential_id}")
    async def delete(credential_id: str, request: Request):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            await orchestrator.delete_credential(ctx, credential_id)
        except CredentialNotFoundError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        return {"success": True}

    # ---- oauth ----

    @app.get("/api/auth/{platform}/authorize")
    def authorize(platform: str, request: Request, account_id: str | None = None):
        ctx = _context(request)
        if ctx is None:
            return _unauthorized()
        try:
            cfg = get_oauth_config(platform)
            manager = orchestrator.oauth_manager(cfg.platform)
            state = new_id("st")
            verifier, challenge = _pkce_pair() if cfg.supports_pkce else (None, None)
            url = manager.build_authorization_url(state, code_challenge=challenge)
        except (UnknownPlatformError, AuthConfigError) as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)

        repo.set_meta(
            _STATE_PREFIX + state,
            json.dumps(
                {
                    "platform": cfg.platform.value,
                    "team_id": ctx.team_id,
                    "user_id": ctx.user_id,
                    "account_id": (account_id or "").strip() or None,
                    "code_verifier": verifier,
                    "created_at": now_utc_iso(),
                }
            ),
        )
        return RedirectResponse(url=url, status_code=302)

    @app.get("/api/auth/callback/{slug}")
    async def oauth_callback(slug: str, code: str | None = None, state: str | None = None, error: str | None = None):
        raw_platform = slug[: -len("-ads")] if slug.endswith("-ads") else slug
        try:
            p = parse_platform(raw_platform)
        except UnknownPlatformError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        if error:
            return _site_redirect(error=error, platform=p.value)
        if not code or not state:
            return _site_redirect(error="missing_code", platform=p.value)

        raw_state = repo.pop_meta(_STATE_PREFIX + state)
        saved: dict[str, Any] = json.loads(raw_state) if raw_state else {}
        if not saved or saved.get("platform") != p.value:
            logger.warning(f"{p} oauth callback with unknown state")
            return _site_redirect(error="invalid_state", platform=p.value)

        manager = orchestrator.oauth_manager(p)
        try:
            record = await manager.exchange_code_for_tokens(code, code_verifier=saved.get("code_verifier"))
        except (TokenExchangeError, AuthConfigError, httpx.HTTPError) as e:
            logger.error(f"{p} token exchange failed for team {saved.get('team_id')}: {type(e).__name__}")
            return _site_redirect(error="token_exchange_failed", platform=p.value)

        account_id = saved.get("account_id") or PENDING_ACCOUNT_ID
        account_name: str | None = None
        stored_secrets: dict[str, Any] = {}
        if p == Platform.GOOGLE and record.refresh_token:
            stored_secrets["refresh_token"] = record.refresh_token
        if p == Platform.GOOGLE and account_id == PENDING_ACCOUNT_ID:
            try:
                found = await orchestrator.discover_account(p, str(saved["team_id"]), stored_secrets, record.access_token)
            except (AllAdError, httpx.HTTPError) as e:
                # stays pending; the user can pick one via /api/accounts and the settings patch
                logger.warning(f"{p} account discovery failed for team {saved['team_id']}: {e}")
                found = None
            if found is not None:
                account_id, account_name = found.id, found.name
        cred_id = repo.save_credential(
            team_id=str(saved["team_id"]),
            platform=p.value,
            account_id=account_id,
            account_name=account_name,
            customer_id=account_id if p == Platform.GOOGLE and account_id != PENDING_ACCOUNT_ID else None,
            credentials=stored_secrets,
            created_by=saved.get("user_id"),
        )
        cred = repo.get_credential(cred_id)
        try:
            await manager.store_tokens(orchestrator.scope_for(cred), record)
        except AllAdError as e:
            logger.error(f"{p} storing tokens failed: {e}")
            return _site_redirect(error="token_store_failed", platform=p.value)
        logger.info(f"{p} connected for team {saved['team_id']} account {account_id}")
        return _site_redirect(connected=p.value)

    # ---- cron ----

    @app.post("/cron/{job_name}")
    async def cron(job_name: str, request: Request):
        if settings.cron_secret and request.headers.get("x-cron-secret") != settings.cron_secret:
            return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
        try:
            return await trigger_scheduled_job(orchestrator, job_name)
        except UnknownJobError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
