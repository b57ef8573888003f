from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from allad.connectors.base import (
    AccountInfo,
    CampaignData,
    CampaignMetrics,
    ConnectionResult,
    CredentialBag,
    DailyMetric,
    DateRange,
    MetaCredentials,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, BatchResult, PlatformApiError
from allad.oauth.configs import META_GRAPH_VERSION
from allad.platforms import Platform

logger = logging.getLogger(__name__)

_GRAPH_BASE_URL = f"https://graph.facebook.com/{META_GRAPH_VERSION}"

BATCH_SIZE = 10
# Fixed pause between status-update batches.
BATCH_DELAY_SEC = 1.0

CONVERSION_ACTION_TYPES = ("purchase", "lead", "complete_registration", "add_to_cart", "initiate_checkout")

_CAMPAIGN_FIELDS = (
    "id,name,status,objective,daily_budget,lifetime_budget,"
    "insights.date_preset(last_30d){impressions,clicks,spend,ctr,cpc,actions,action_values}"
)


def _account_id(raw: str | None) -> str:
    return str(raw or "").strip().removeprefix("act_")


def _campaign_status(raw: str | None) -> str:
    s = str(raw or "").upper()
    if s == "ACTIVE":
        return "active"
    return s.lower() or "unknown"


def _action_map(items: Any) -> dict[str, float]:
    out: dict[str, float] = {}
    if not isinstance(items, list):
        return out
    for it in items:
        if not isinstance(it, dict):
            continue
        t = str(it.get("action_type") or "").strip()
        if not t:
            continue
        out[t] = out.get(t, 0.0) + to_float(it.get("value"))
    return out


def _conversions(actions: Any) -> float:
    amap = _action_map(actions)
    return sum(amap.get(t, 0.0) for t in CONVERSION_ACTION_TYPES)


def _revenue(action_values: Any) -> float:
    return _action_map(action_values).get("purchase", 0.0)


def _budget(c: dict[str, Any]) -> tuple[float | None, str | None]:
    # Graph API budgets are in the account currency's minor unit (cents).
    if c.get("daily_budget"):
        return to_float(c["daily_budget"]) / 100.0, "daily"
    if c.get("lifetime_budget"):
        return to_float(c["lifetime_budget"]) / 100.0, "lifetime"
    return None, None


class MetaAdsClient:
    """Meta Marketing API (Graph) adapter."""

    platform = Platform.META

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: MetaCredentials | None = None
        self._sleep = sleep

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, MetaCredentials):
            raise AuthConfigError(self.platform.value, "meta credential bag")
        self._creds = bag

    def _require(self) -> MetaCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _appsecret_proof(self) -> str | None:
        # https://developers.facebook.com/docs/graph-api/securing-requests/
        creds = self._require()
        if not creds.app_secret or not creds.access_token:
            return None
        return hmac.new(
            creds.app_secret.encode("utf-8", errors="strict"),
            creds.access_token.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).hexdigest()

    def _auth_params(self) -> dict[str, Any]:
        p: dict[str, Any] = {"access_token": self._require().access_token}
        proof = self._appsecret_proof()
        if proof:
            p["appsecret_proof"] = proof
        return p

    def _resolve_account(self, account_id: str | None) -> str:
        acc = _account_id(account_id or self._require().account_id)
        if not acc:
            raise AuthConfigError(self.platform.value, "account_id")
        return acc

    @staticmethod
    def _check_body(obj: Any) -> Any:
        # Graph occasionally returns 200 with an error object.
        if isinstance(obj, dict) and obj.get("error"):
            err = obj.get("error") or {}
            raise PlatformApiError(
                "meta",
                f"Meta Graph API error: {err.get('message') or 'unknown error'}",
                code=err.get("code"),
                payload=obj,
            )
        return obj

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        p = dict(params or {})
        p.update(self._auth_params())
        obj = await self._http.request("GET", f"{_GRAPH_BASE_URL}/{path.lstrip('/')}", params=p)
        return self._check_body(obj)

    async def _post(self, path: str, data: dict[str, Any]) -> Any:
        d = dict(data)
        d.update(self._auth_params())
        obj = await self._http.request("POST", f"{_GRAPH_BASE_URL}/{path.lstrip('/')}", data=d)
        return self._check_body(obj)

    async def _iter_graph_data(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Full data list for a collection endpoint, following paging.next cursors."""
        out: list[dict[str, Any]] = []
        obj = await self._get(path, params)
        while isinstance(obj, dict):
            out.extend(x for x in (obj.get("data") or []) if isinstance(x, dict))
            next_url = (obj.get("paging") or {}).get("next")
            if not next_url:
                break
            # next already carries the token and cursor
            obj = self._check_body(await self._http.request("GET", str(next_url)))
        return out

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            creds = self._require()
            if creds.account_id:
                obj = await self._get(f"act_{_account_id(creds.account_id)}", {"fields": "id,name,currency,timezone_name"})
                acc = AccountInfo(
                    id=_account_id(obj.get("id")),
                    name=str(obj.get("name") or ""),
                    currency=obj.get("currency"),
                    timezone=obj.get("timezone_name"),
                )
            else:
                obj = await self._get("me", {"fields": "id,name"})
                acc = AccountInfo(id=str(obj.get("id") or ""), name=str(obj.get("name") or ""))
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        return ConnectionResult(ok=True, account=acc)

    async def fetch_accounts(self) -> list[AccountInfo]:
        creds = self._require()
        fields = {"fields": "id,name,currency,timezone_name,account_status", "limit": 100}
        if creds.business_id:
            rows = await self._iter_graph_data(f"{creds.business_id}/owned_ad_accounts", fields)
        else:
            rows = await self._iter_graph_data("me/adaccounts", fields)
        accounts = [
            AccountInfo(
                id=_account_id(r.get("id")),
                name=str(r.get("name") or ""),
                currency=r.get("currency"),
                timezone=r.get("timezone_name"),
                status=str(r.get("account_status")) if r.get("account_status") is not None else None,
            )
            for r in rows
        ]
        accounts.sort(key=lambda a: a.name.lower())
        return accounts

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        acc = self._resolve_account(account_id)
        rows = await self._iter_graph_data(f"act_{acc}/campaigns", {"fields": _CAMPAIGN_FIELDS, "limit": 100})
        out: list[CampaignData] = []
        for c in rows:
            budget, budget_type = _budget(c)
            insight = ((c.get("insights") or {}).get("data") or [{}])[0]
            metrics = None
            if insight:
                metrics = CampaignMetrics(
                    impressions=to_int(insight.get("impressions")),
                    clicks=to_int(insight.get("clicks")),
                    cost=to_float(insight.get("spend")),
                    conversions=_conversions(insight.get("actions")),
                    revenue=_revenue(insight.get("action_values")),
                    ctr=to_float(insight.get("ctr")),
                    cpc=to_float(insight.get("cpc")),
                )
            out.append(
                CampaignData(
                    id=str(c.get("id") or ""),
                    name=str(c.get("name") or ""),
                    status=_campaign_status(c.get("status")),
                    budget=budget,
                    budget_type=budget_type,
                    metrics=metrics,
                    raw={"status": c.get("status"), "objective": c.get("objective")},
                )
            )
        out.sort(key=lambda x: x.name)
        return out

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        try:
            obj = await self._post(str(campaign_id), {"status": "ACTIVE" if s == "active" else "PAUSED"})
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"meta status update failed for {campaign_id}: {e}")
            return False
        return bool(isinstance(obj, dict) and obj.get("success", True))

    async def batch_update_campaign_status(
        self,
        account_id: str | None,
        campaign_ids: list[str],
        status: str,
        *,
        batch_size: int = BATCH_SIZE,
        delay_sec: float = BATCH_DELAY_SEC,
    ) -> BatchResult:
        """
        Update many campaigns in chunks of `batch_size`, pausing `delay_sec` between
        chunks. Failed items are counted; remaining batches still run.

        A rejected token aborts the whole batch with the PlatformApiError so the
        caller can refresh and retry it.
        """
        result = BatchResult()
        ids = [str(x) for x in campaign_ids]
        for start in range(0, len(ids), batch_size):
            if start:
                await self._sleep(delay_sec)
            chunk = ids[start : start + batch_size]
            outcomes = await asyncio.gather(
                *(self.update_campaign_status(account_id, cid, status) for cid in chunk),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, PlatformApiError) and outcome.needs_reauth:
                    raise outcome
            for cid, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(f"meta batch item {cid} failed: {type(outcome).__name__}: {outcome}")
                    result.record(cid, False)
                else:
                    result.record(cid, bool(outcome))
        if result.failed:
            logger.info(f"meta batch status update: {result.succeeded} ok, {result.failed} failed")
        return result

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        try:
            obj = await self._post(str(campaign_id), {"daily_budget": str(int(round(float(amount) * 100)))})
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"meta budget update failed for {campaign_id}: {e}")
            return False
        return bool(isinstance(obj, dict) and obj.get("success", True))

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        params = {
            "fields": "impressions,clicks,spend,actions,action_values",
            "time_range": json.dumps(
                {"since": date_range.start.isoformat(), "until": date_range.end.isoformat()},
                separators=(",", ":"),
            ),
            "time_increment": 1,
            "limit": 500,
        }
        rows = await self._iter_graph_data(f"{campaign_id}/insights", params)
        return [
            DailyMetric(
                date=str(r.get("date_start") or ""),
                impressions=to_int(r.get("impressions")),
                clicks=to_int(r.get("clicks")),
                cost=to_float(r.get("spend")),
                conversions=_conversions(r.get("actions")),
                revenue=_revenue(r.get("action_values")),
            )
            for r in rows
        ]
