from __future__ import annotations

import logging
from functools import partial
from typing import Any, Awaitable, Callable

import httpx

from allad.errors import AuthConfigError, TokenRefreshError, UnknownJobError, UnknownPlatformError
from allad.platforms import REFRESHABLE, Platform, parse_platform
from allad.sync import RequestContext, SyncOrchestrator, account_identifier
from allad.tokens.store import TokenRecord
from allad.util import now_ms, now_utc_iso

logger = logging.getLogger(__name__)

INCREMENTAL = "incremental"
FULL = "full"

# Tokens expiring within this window are refreshed by the token job.
TOKEN_REFRESH_WINDOW_MS = 30 * 60 * 1000

# Consecutive rejected refreshes before a credential is deactivated.
MAX_REFRESH_FAILURES = 3


async def run_platform_sync_job(
    orchestrator: SyncOrchestrator, platform: Platform | str = Platform.GOOGLE, sync_type: str = INCREMENTAL
) -> dict[str, Any]:
    """
    Sync every active credential of one platform. A failing account is recorded
    in the results and the loop moves on.
    """
    p = parse_platform(platform)
    creds = orchestrator.repo.list_active_credentials(platform=p.value)
    logger.info(f"{p} {sync_type} sync: {len(creds)} account(s)")

    results: list[dict[str, Any]] = []
    for cred in creds:
        entry: dict[str, Any] = {
            "accountId": account_identifier(cred),
            "accountName": cred.get("account_name") or cred["account_id"],
        }
        ctx = RequestContext(team_id=str(cred["team_id"]), user_id=cred.get("created_by"))
        try:
            outcome = await orchestrator.sync_platform_campaigns(ctx, p, sync_type=sync_type, credential=cred)
        except Exception as e:  # noqa: BLE001
            outcome = {"success": False, "error": str(e) or type(e).__name__}

        if outcome.get("success"):
            entry.update(status="synced", campaigns_synced=int(outcome.get("count") or 0))
            logger.info(f"{p} account {entry['accountId']} synced: {entry['campaigns_synced']} campaign(s)")
        else:
            entry.update(status="error", error=outcome.get("error"))
            logger.error(f"{p} account {entry['accountId']} sync failed: {entry['error']}")
        results.append(entry)

    return {
        "success": True,
        "syncType": sync_type,
        "timestamp": now_utc_iso(),
        "processed": len(results),
        "results": results,
    }


async def _refresh_one(orchestrator: SyncOrchestrator, cred: dict[str, Any]) -> str:
    try:
        p = parse_platform(cred["platform"])
    except UnknownPlatformError:
        return "skipped"
    if p not in REFRESHABLE:
        return "skipped"

    scope = orchestrator.scope_for(cred)
    record: TokenRecord | None = await orchestrator.token_store.get(scope)
    if record is None or not record.refresh_token:
        return "skipped"
    if not record.expires_within(TOKEN_REFRESH_WINDOW_MS, now=now_ms()):
        return "not_needed"

    repo = orchestrator.repo
    try:
        token = await orchestrator.oauth_manager(p).refresh_scope(scope, window_ms=TOKEN_REFRESH_WINDOW_MS)
    except TokenRefreshError:
        failures = int((cred.get("data") or {}).get("refresh_failures") or 0) + 1
        repo.update_credential_data(
            cred["id"],
            {"refresh_error": "token refresh rejected", "refresh_failures": failures, "refresh_failed_at": now_utc_iso()},
        )
        if failures >= MAX_REFRESH_FAILURES:
            logger.warning(f"{p} credential {cred['id']} deactivated after {failures} rejected refreshes")
            repo.deactivate_credential(cred["id"], error=f"{p} needs reconnection")
        return "failed"
    except (AuthConfigError, httpx.HTTPError) as e:
        # not the grant's fault; the next run retries
        repo.update_credential_data(
            cred["id"], {"refresh_error": f"{type(e).__name__}: {e}", "refresh_failed_at": now_utc_iso()}
        )
        return "failed"

    if token is None:
        return "skipped"
    if (cred.get("data") or {}).get("refresh_failures"):
        repo.update_credential_data(cred["id"], {"refresh_failures": 0, "refresh_error": None})
    return "refreshed"


async def run_refresh_tokens_job(orchestrator: SyncOrchestrator) -> dict[str, Any]:
    creds = orchestrator.repo.list_active_credentials()
    results: list[dict[str, Any]] = []
    for cred in creds:
        try:
            status = await _refresh_one(orchestrator, cred)
        except Exception as e:  # noqa: BLE001
            logger.error(f"token refresh crashed for credential {cred['id']}: {type(e).__name__}: {e}")
            status = "failed"
        if status in {"refreshed", "failed"}:
            logger.info(f"{cred['platform']} credential {cred['id']}: {status}")
        results.append({"credentialId": cred["id"], "platform": cred["platform"], "status": status})

    counts = {k: sum(1 for r in results if r["status"] == k) for k in ("refreshed", "failed", "not_needed", "skipped")}
    return {
        "success": True,
        "timestamp": now_utc_iso(),
        "processed": len(results),
        **counts,
        "results": results,
    }


JobFn = Callable[[SyncOrchestrator], Awaitable[dict[str, Any]]]

JOBS: dict[str, JobFn] = {
    "refresh-oauth-tokens": run_refresh_tokens_job,
    "google-ads-sync-hourly": partial(run_platform_sync_job, platform=Platform.GOOGLE, sync_type=INCREMENTAL),
    "google-ads-sync-full-daily": partial(run_platform_sync_job, platform=Platform.GOOGLE, sync_type=FULL),
}


async def trigger_scheduled_job(orchestrator: SyncOrchestrator, job_name: str) -> dict[str, Any]:
    job = JOBS.get(str(job_name or "").strip())
    if job is None:
        raise UnknownJobError(str(job_name))
    logger.info(f"scheduled job {job_name} started")
    return await job(orchestrator)
