from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from allad.connectors.base import (
    AccountInfo,
    CampaignData,
    CampaignMetrics,
    ConnectionResult,
    CredentialBag,
    DailyMetric,
    DateRange,
    NaverCredentials,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.searchad.naver.com"
_STAT_FIELDS = ["impCnt", "clkCnt", "salesAmt", "ccnt", "convAmt"]


def _campaign_status(c: dict[str, Any]) -> str:
    if c.get("userLock"):
        return "paused"
    s = str(c.get("status") or "").upper()
    if s in {"ELIGIBLE", "ON", ""}:
        return "active"
    return s.lower()


def _metric_values(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "impressions": to_int(row.get("impCnt")),
        "clicks": to_int(row.get("clkCnt")),
        # salesAmt is spend in Naver's naming; convAmt is conversion revenue
        "cost": to_float(row.get("salesAmt")),
        "conversions": to_float(row.get("ccnt")),
        "revenue": to_float(row.get("convAmt")),
    }


class NaverSearchAdClient:
    """Naver Search Ad API adapter. Requests are HMAC-SHA256 signed per call."""

    platform = Platform.NAVER

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = DEFAULT_TIMEOUT_SEC):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: NaverCredentials | None = None

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, NaverCredentials):
            raise AuthConfigError(self.platform.value, "naver credential bag")
        self._creds = bag

    def _require(self) -> NaverCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _signature(self, timestamp_ms: str, method: str, uri: str) -> str:
        msg = f"{timestamp_ms}.{method}.{uri}"
        digest = hmac.new(
            self._require().api_secret.encode("utf-8", errors="strict"),
            msg.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii", errors="strict")

    def _headers(self, method: str, uri: str) -> dict[str, str]:
        creds = self._require()
        ts = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Timestamp": ts,
            "X-API-KEY": creds.api_key,
            "X-Customer": str(creds.customer_id),
            "X-Signature": self._signature(ts, method, uri),
        }

    async def request_json(
        self,
        method: str,
        uri: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        return await self._http.request(
            method,
            f"{_BASE_URL}{uri}",
            params=params,
            json_body=json_body,
            headers=self._headers(method, uri),
        )

    async def _stats(self, ids: list[str], params: dict[str, Any]) -> list[dict[str, Any]]:
        if not ids:
            return []
        p = {"ids": ",".join(ids), "fields": json.dumps(_STAT_FIELDS)}
        p.update(params)
        obj = await self.request_json("GET", "/stats", params=p)
        return list((obj or {}).get("data") or []) if isinstance(obj, dict) else []

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            await self.request_json("GET", "/ncc/campaigns")
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        return ConnectionResult(ok=True, account=(await self.fetch_accounts())[0])

    async def fetch_accounts(self) -> list[AccountInfo]:
        # API keys are issued per advertiser customer; there is no hierarchy to walk.
        cid = str(self._require().customer_id)
        return [AccountInfo(id=cid, name=f"Naver {cid}", currency="KRW", timezone="Asia/Seoul")]

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        rows = await self.request_json("GET", "/ncc/campaigns") or []
        ids = [str(c.get("nccCampaignId")) for c in rows if c.get("nccCampaignId")]

        stats_by_id: dict[str, dict[str, Any]] = {}
        try:
            for s in await self._stats(ids, {"datePreset": "last30days"}):
                stats_by_id[str(s.get("id"))] = s
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"naver stats failed, campaigns synced without metrics: {e}")

        out: list[CampaignData] = []
        for c in rows:
            cid = str(c.get("nccCampaignId") or "")
            if not cid:
                continue
            s = stats_by_id.get(cid)
            budget = to_float(c.get("dailyBudget")) if c.get("useDailyBudget") else None
            out.append(
                CampaignData(
                    id=cid,
                    name=str(c.get("name") or ""),
                    status=_campaign_status(c),
                    budget=budget,
                    budget_type="daily" if budget is not None else None,
                    metrics=CampaignMetrics(**_metric_values(s)) if s is not None else None,
                    raw={"status": c.get("status"), "userLock": c.get("userLock"), "campaignTp": c.get("campaignTp")},
                )
            )
        return out

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        try:
            await self.request_json(
                "PUT",
                f"/ncc/campaigns/{campaign_id}",
                params={"fields": "userLock"},
                json_body={"nccCampaignId": str(campaign_id), "userLock": s == "paused"},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"naver status update failed for {campaign_id}: {e}")
            return False
        return True

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        try:
            await self.request_json(
                "PUT",
                f"/ncc/campaigns/{campaign_id}",
                params={"fields": "budget"},
                json_body={"nccCampaignId": str(campaign_id), "dailyBudget": int(amount), "useDailyBudget": True},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"naver budget update failed for {campaign_id}: {e}")
            return False
        return True

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        rows = await self._stats(
            [str(campaign_id)],
            {
                "timeRange": json.dumps({"since": date_range.start.isoformat(), "until": date_range.end.isoformat()}),
                "timeIncrement": "1",
            },
        )
        out = [DailyMetric(date=str(r.get("dateStart") or ""), **_metric_values(r)) for r in rows]
        out.sort(key=lambda x: x.date)
        return out
