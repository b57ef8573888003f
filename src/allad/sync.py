from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from allad.config import Settings
from allad.connectors.base import (
    AccountInfo,
    CampaignData,
    DateRange,
    PlatformClient,
    merge_credentials,
    status_from_active,
)
from allad.errors import (
    AllAdError,
    BatchResult,
    CredentialNotFoundError,
    PartialBatchFailure,
    PlatformApiError,
    ReauthRequiredError,
    TokenExchangeError,
    TokenRefreshError,
    UnknownPlatformError,
)
from allad.oauth.manager import OAuthManager, build_oauth_manager
from allad.platforms import REFRESHABLE, Platform, parse_platform
from allad.registry import PlatformServiceFactory, default_factory
from allad.repo import Repo
from allad.tokens.cache import TokenCache, build_token_cache
from allad.tokens.store import ScopeKey, TokenStore
from allad.util import local_today, now_utc_iso, today_str

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Days of daily metrics pulled per campaign on a full sync.
FULL_SYNC_BACKFILL_DAYS = 30

# Account id a credential is stored under until its target account is known.
PENDING_ACCOUNT_ID = "default"

# Credential-bag field that receives the stored external account id.
_ACCOUNT_FIELD = {
    Platform.GOOGLE: "customer_id",
    Platform.META: "account_id",
    Platform.NAVER: "customer_id",
    Platform.KAKAO: "account_id",
    Platform.COUPANG: "vendor_id",
    Platform.TIKTOK: "advertiser_id",
    Platform.AMAZON: "profile_id",
}


@dataclass(frozen=True)
class RequestContext:
    """Who a call is made for. Threaded through every orchestration call."""

    team_id: str
    user_id: str | None = None
    auth_token: str | None = None


def account_identifier(cred: dict[str, Any]) -> str:
    """
    Target account id of a credential row: the explicit `customer_id` column when
    present, otherwise the last `_` segment of a composite `account_id`
    (e.g. "google_123_4567890123" -> "4567890123").
    """
    explicit = str(cred.get("customer_id") or "").strip()
    if explicit:
        return explicit
    raw = str(cred.get("account_id") or "").strip()
    if raw == PENDING_ACCOUNT_ID:
        return ""
    return raw.rsplit("_", 1)[-1] if "_" in raw else raw


def is_auth_failure(e: BaseException) -> bool:
    if isinstance(e, (ReauthRequiredError, TokenRefreshError, TokenExchangeError)):
        return True
    return isinstance(e, PlatformApiError) and e.needs_reauth


def user_error(platform: str, e: BaseException) -> str:
    if is_auth_failure(e):
        return f"{platform} needs reconnection"
    return str(e) or type(e).__name__


class SyncOrchestrator:
    """
    Drives campaign syncs and status changes for (team, platform) pairs.

    Public methods never raise for caller-triggered work: failures come back as
    `{"success": False, "error": ...}`.
    """

    def __init__(
        self,
        repo: Repo,
        factory: PlatformServiceFactory,
        token_store: TokenStore,
        settings: Settings,
        *,
        oauth_factory: Callable[[Platform], OAuthManager] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.repo = repo
        self.factory = factory
        self.token_store = token_store
        self.settings = settings
        self._oauth_factory = oauth_factory or (
            lambda p: build_oauth_manager(
                p, settings=settings, token_store=token_store, repo=repo, transport=transport
            )
        )

    # ---- credentials / tokens ----

    def oauth_manager(self, platform: Platform | str) -> OAuthManager:
        return self._oauth_factory(parse_platform(platform))

    @staticmethod
    def scope_for(cred: dict[str, Any]) -> ScopeKey:
        return ScopeKey(
            platform=str(cred["platform"]),
            owner_id=str(cred["team_id"]),
            account_id=str(cred["account_id"]),
            credential_id=str(cred["id"]),
        )

    def active_credential(self, ctx: RequestContext, platform: Platform) -> dict[str, Any]:
        cred = self.repo.get_active_credential(ctx.team_id, platform.value)
        if not cred or not cred.get("is_active"):
            raise CredentialNotFoundError(ctx.team_id, platform.value)
        return cred

    async def resolve_access_token(self, cred: dict[str, Any]) -> str | None:
        """
        A usable access token for the credential, refreshed if it is about to expire.

        None means no token is managed for this credential (the stored bag is used
        as-is). Raises ReauthRequiredError when a managed token exists but could not
        be refreshed.
        """
        p = parse_platform(cred["platform"])
        if p not in REFRESHABLE:
            return None
        scope = self.scope_for(cred)
        token = await self.oauth_manager(p).get_valid_access_token(scope)
        if token is None and await self.token_store.get(scope) is not None:
            raise ReauthRequiredError(p.value)
        return token

    def _client_defaults(self, p: Platform) -> dict[str, Any]:
        client_id, client_secret = self.settings.oauth_client(p.value)
        if p == Platform.GOOGLE:
            return {
                "client_id": client_id,
                "client_secret": client_secret,
                "developer_token": self.settings.google_developer_token,
            }
        if p == Platform.META:
            return {"app_id": client_id, "app_secret": client_secret}
        if p == Platform.TIKTOK:
            return {"app_id": client_id, "secret": client_secret}
        if p in (Platform.KAKAO, Platform.AMAZON):
            return {"client_id": client_id, "client_secret": client_secret}
        return {}

    def build_client(self, cred: dict[str, Any], access_token: str | None) -> PlatformClient:
        p = parse_platform(cred["platform"])
        # lowest to highest precedence: env client config, connect-time account, stored bag
        stored: dict[str, Any] = {k: v for k, v in self._client_defaults(p).items() if v}
        account = account_identifier(cred)
        if account:
            stored[_ACCOUNT_FIELD[p]] = account
        stored.update({k: v for k, v in (cred.get("credentials") or {}).items() if v not in (None, "")})

        extra: dict[str, Any] = {"team_id": cred["team_id"], "timezone": self.settings.timezone}
        if access_token:
            extra["access_token"] = access_token
        bag = merge_credentials(p, stored, cred.get("settings"), extra)

        client = self.factory.create_service(p)
        client.set_credentials(bag)
        return client

    async def _call(self, cred: dict[str, Any], fn: Callable[[PlatformClient], Awaitable[T]]) -> T:
        """
        Run `fn` against a ready client. If the platform rejects the token, refresh
        once and retry once; a second rejection is terminal.
        """
        token = await self.resolve_access_token(cred)
        client = self.build_client(cred, token)
        try:
            return await fn(client)
        except PlatformApiError as e:
            if not e.needs_reauth:
                raise
            p = parse_platform(cred["platform"])
            if p not in REFRESHABLE:
                raise ReauthRequiredError(p.value) from e
            logger.info(f"{p} rejected token for team {cred['team_id']}, refreshing once")
            fresh = await self.oauth_manager(p).force_refresh(self.scope_for(cred), rejected_token=token)
            if not fresh:
                raise ReauthRequiredError(p.value) from e

        try:
            return await fn(self.build_client(cred, fresh))
        except PlatformApiError as e:
            if e.needs_reauth:
                raise ReauthRequiredError(p.value) from e
            raise

    # ---- sync ----

    def _store_campaigns(self, cred: dict[str, Any], campaigns: list[CampaignData], ids: dict[str, str]) -> None:
        """Upsert campaigns and today's metrics. `ids` collects platform id -> row id as rows commit."""
        day = today_str(self.settings.timezone)
        for c in campaigns:
            if not c.id:
                continue
            row_id = self.repo.upsert_campaign(
                team_id=cred["team_id"],
                platform=cred["platform"],
                platform_campaign_id=c.id,
                credential_id=cred["id"],
                name=c.name,
                status=c.status,
                is_active=c.is_active,
                budget=c.budget,
                budget_type=c.budget_type,
                raw_json=c.raw,
            )
            ids[c.id] = row_id
            if c.metrics is not None:
                self.repo.upsert_campaign_metric(
                    campaign_id=row_id,
                    team_id=cred["team_id"],
                    day=day,
                    impressions=c.metrics.impressions,
                    clicks=c.metrics.clicks,
                    cost=c.metrics.cost,
                    conversions=c.metrics.conversions,
                    revenue=c.metrics.revenue,
                )

    async def _backfill_metrics(self, cred: dict[str, Any], ids: dict[str, str]) -> None:
        date_range = DateRange.last_days(FULL_SYNC_BACKFILL_DAYS, today=local_today(self.settings.timezone))
        for platform_id, row_id in ids.items():
            try:
                series = await self._call(
                    cred, lambda client: client.fetch_campaign_metrics(None, platform_id, date_range)
                )
            except PlatformApiError as e:
                logger.warning(f"{cred['platform']} metrics backfill failed for campaign {platform_id}: {e}")
                continue
            for m in series:
                if not m.date:
                    continue
                self.repo.upsert_campaign_metric(
                    campaign_id=row_id,
                    team_id=cred["team_id"],
                    day=m.date,
                    impressions=m.impressions,
                    clicks=m.clicks,
                    cost=m.cost,
                    conversions=m.conversions,
                    revenue=m.revenue,
                )

    async def sync_platform_campaigns(
        self,
        ctx: RequestContext,
        platform: Platform | str,
        *,
        sync_type: str = "manual",
        credential: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        started_at = now_utc_iso()
        name = str(platform)
        cred: dict[str, Any] | None = None
        ids: dict[str, str] = {}
        error: str | None = None
        try:
            p = parse_platform(platform)
            name = p.value
            cred = credential or self.active_credential(ctx, p)
            campaigns = await self._call(cred, lambda client: client.fetch_campaigns(None))
            self._store_campaigns(cred, campaigns, ids)
            if sync_type == "full":
                await self._backfill_metrics(cred, ids)
        except Exception as e:  # noqa: BLE001
            error = user_error(name, e)
            if isinstance(e, AllAdError):
                logger.warning(f"{name} sync failed for team {ctx.team_id}: {e}")
            else:
                logger.exception(f"{name} sync crashed for team {ctx.team_id}")

        # rows already upserted stay committed; the log counts them
        count = len(ids)

        self.repo.insert_sync_log(
            team_id=ctx.team_id,
            platform=name,
            sync_type=sync_type,
            status="success" if error is None else "failed",
            records_synced=count,
            error_message=error,
            started_at=started_at,
            completed_at=now_utc_iso(),
        )
        if cred is not None:
            self.repo.update_credential_sync_status(cred["id"], ok=error is None, error=error)

        if error is not None:
            return {"success": False, "error": error}
        logger.info(f"{name} sync ok for team {ctx.team_id}: {count} campaign(s)")
        return {"success": True, "count": count}

    async def sync_all_platforms(self, ctx: RequestContext) -> list[dict[str, Any]]:
        creds = self.repo.list_active_credentials(team_id=ctx.team_id)
        platforms = sorted({str(c["platform"]) for c in creds})
        outcomes = await asyncio.gather(
            *(self.sync_platform_campaigns(ctx, p) for p in platforms),
            return_exceptions=True,
        )
        results: list[dict[str, Any]] = []
        for p, outcome in zip(platforms, outcomes):
            if isinstance(outcome, BaseException):
                results.append({"platform": p, "success": False, "error": user_error(p, outcome)})
            elif outcome.get("success"):
                results.append({"platform": p, "success": True})
            else:
                results.append({"platform": p, "success": False, "error": outcome.get("error")})
        return results

    # ---- campaign changes ----

    async def update_campaign_status(
        self, ctx: RequestContext, platform: Platform | str, campaign_id: str, is_active: bool
    ) -> dict[str, Any]:
        status = status_from_active(is_active)
        name = str(platform)
        try:
            p = parse_platform(platform)
            name = p.value
            cred = self.active_credential(ctx, p)
            ok = await self._call(cred, lambda client: client.update_campaign_status(None, str(campaign_id), status))
        except Exception as e:  # noqa: BLE001
            logger.warning(f"{name} status update failed for campaign {campaign_id}: {e}")
            return {"success": False, "error": user_error(name, e)}

        if not ok:
            return {"success": False, "error": f"Failed to update campaign {campaign_id}"}
        self.repo.set_campaign_status(
            team_id=ctx.team_id,
            platform=name,
            platform_campaign_id=str(campaign_id),
            status=status,
            is_active=is_active,
        )
        logger.info(f"{name} campaign {campaign_id} set {status} by {ctx.user_id or 'system'}")
        return {"success": True}

    async def batch_update_campaign_status(
        self, ctx: RequestContext, platform: Platform | str, campaign_ids: list[str], is_active: bool
    ) -> dict[str, Any]:
        status = status_from_active(is_active)
        name = str(platform)
        result = BatchResult()
        try:
            p = parse_platform(platform)
            name = p.value
            cred = self.active_credential(ctx, p)

            async def _run(client: PlatformClient) -> BatchResult:
                batch = getattr(client, "batch_update_campaign_status", None)
                if callable(batch):
                    return await batch(None, campaign_ids, status)
                out = BatchResult()
                for cid in campaign_ids:
                    out.record(str(cid), await client.update_campaign_status(None, str(cid), status))
                return out

            result = await self._call(cred, _run)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"{name} batch status update failed: {e}")
            return {"success": False, "error": user_error(name, e)}

        failed = set(result.failed_ids)
        for cid in campaign_ids:
            if str(cid) not in failed:
                self.repo.set_campaign_status(
                    team_id=ctx.team_id,
                    platform=name,
                    platform_campaign_id=str(cid),
                    status=status,
                    is_active=is_active,
                )
        try:
            result.raise_for_failures()
        except PartialBatchFailure as e:
            logger.warning(f"{name} batch status update: {e}")
            return {"success": False, "error": str(e), **result.to_dict()}
        return {"success": True, **result.to_dict()}

    async def update_campaign_budget(
        self, ctx: RequestContext, platform: Platform | str, campaign_id: str, amount: float
    ) -> dict[str, Any]:
        name = str(platform)
        try:
            p = parse_platform(platform)
            name = p.value
            cred = self.active_credential(ctx, p)
            ok = await self._call(cred, lambda client: client.update_campaign_budget(None, str(campaign_id), amount))
        except Exception as e:  # noqa: BLE001
            logger.warning(f"{name} budget update failed for campaign {campaign_id}: {e}")
            return {"success": False, "error": user_error(name, e)}
        if not ok:
            return {"success": False, "error": f"Failed to update budget for campaign {campaign_id}"}
        self.repo.set_campaign_budget(
            team_id=ctx.team_id, platform=name, platform_campaign_id=str(campaign_id), budget=float(amount)
        )
        return {"success": True}

    # ---- credential lifecycle ----

    async def list_accounts(self, ctx: RequestContext, platform: Platform | str) -> dict[str, Any]:
        name = str(platform)
        try:
            p = parse_platform(platform)
            name = p.value
            cred = self.active_credential(ctx, p)
            accounts = await self._call(cred, lambda client: client.fetch_accounts())
        except Exception as e:  # noqa: BLE001
            logger.warning(f"{name} account listing failed for team {ctx.team_id}: {e}")
            return {"success": False, "error": user_error(name, e)}
        return {"success": True, "accounts": [a.to_dict() for a in accounts]}

    async def discover_account(
        self, platform: Platform | str, team_id: str, credentials: dict[str, Any], access_token: str
    ) -> AccountInfo | None:
        """
        Pick the account a freshly authorized credential should target: the first
        non-manager account reachable with `access_token`, else the first one.

        Returns None when nothing is reachable. Used before the credential row exists.
        """
        p = parse_platform(platform)
        pending = {
            "id": "",
            "platform": p.value,
            "team_id": team_id,
            "account_id": PENDING_ACCOUNT_ID,
            "credentials": credentials,
        }
        accounts = [a for a in await self.build_client(pending, access_token).fetch_accounts() if a.id]
        if not accounts:
            return None
        return next((a for a in accounts if not a.is_manager), accounts[0])

    def update_credential_settings(self, ctx: RequestContext, credential_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        self._owned_credential(ctx, credential_id)
        settings = self.repo.update_credential_settings(credential_id, patch)
        logger.info(f"credential {credential_id} settings updated by {ctx.user_id or 'system'}: {sorted(patch)}")
        return settings


    async def test_connection(self, ctx: RequestContext, platform: Platform | str) -> dict[str, Any]:
        name = str(platform)
        try:
            p = parse_platform(platform)
            name = p.value
            cred = self.active_credential(ctx, p)
            client = self.build_client(cred, await self.resolve_access_token(cred))
        except Exception as e:  # noqa: BLE001
            return {"success": False, "error": user_error(name, e)}
        result = await client.test_connection()
        if not result.ok:
            return {"success": False, "error": result.error or "connection failed"}
        return {"success": True, "account": result.account.to_dict() if result.account else None}

    async def connection_status(self, ctx: RequestContext) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for cred in self.repo.list_credentials(ctx.team_id):
            status = "disconnected"
            if cred["is_active"]:
                try:
                    p = parse_platform(cred["platform"])
                except UnknownPlatformError:
                    continue
                if p in REFRESHABLE:
                    status = await self.oauth_manager(p).auth_status(self.scope_for(cred))
                    if status == "disconnected" and cred["credentials"]:
                        status = "connected"
                else:
                    status = "connected"
            out.append(
                {
                    "id": cred["id"],
                    "platform": cred["platform"],
                    "account_id": cred["account_id"],
                    "account_name": cred.get("account_name"),
                    "status": status,
                    "last_synced_at": cred.get("last_synced_at"),
                    "last_error": cred.get("last_error"),
                }
            )
        return out

    def _owned_credential(self, ctx: RequestContext, credential_id: str) -> dict[str, Any]:
        cred = self.repo.get_credential(credential_id)
        if not cred or cred["team_id"] != ctx.team_id:
            raise CredentialNotFoundError(ctx.team_id, credential_id)
        return cred

    async def disconnect_credential(self, ctx: RequestContext, credential_id: str) -> None:
        cred = self._owned_credential(ctx, credential_id)
        await self.token_store.delete(self.scope_for(cred))
        self.repo.update_credential_data(credential_id, {"connected": False}, is_active=False)
        logger.info(f"{cred['platform']} credential {credential_id} disconnected by {ctx.user_id or 'system'}")

    async def delete_credential(self, ctx: RequestContext, credential_id: str) -> None:
        cred = self._owned_credential(ctx, credential_id)
        await self.token_store.delete(self.scope_for(cred))
        self.repo.delete_credential(credential_id)
        logger.info(f"{cred['platform']} credential {credential_id} deleted by {ctx.user_id or 'system'}")


def build_orchestrator(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: TokenCache | None = None,
) -> SyncOrchestrator:
    repo = Repo(settings.db_path)
    token_store = TokenStore(cache or build_token_cache(settings.redis_url), repo)
    factory = default_factory(repo, transport=transport, timeout=settings.http_timeout_sec)
    return SyncOrchestrator(repo, factory, token_store, settings, transport=transport)
