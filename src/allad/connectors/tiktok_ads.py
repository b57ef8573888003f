from __future__ import annotations

import json
import logging
from datetime import date, timedelta
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
    TikTokCredentials,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform
from allad.util import local_today

logger = logging.getLogger(__name__)

_BASE_URL = "https://business-api.tiktok.com/open_api/v1.3"
_PAGE_SIZE = 100


def _campaign_status(raw: str | None) -> str:
    s = str(raw or "").upper()
    if s in {"ENABLE", "CAMPAIGN_STATUS_ENABLE"}:
        return "active"
    if s in {"DISABLE", "CAMPAIGN_STATUS_DISABLE"}:
        return "paused"
    if "DELETE" in s:
        return "removed"
    return s.lower() or "unknown"


class TikTokAdsClient:
    """
    TikTok Business API adapter.

    Every response is an envelope {code, message, data}; a non-zero code is an
    error even on HTTP 200.
    """

    platform = Platform.TIKTOK

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = DEFAULT_TIMEOUT_SEC):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: TikTokCredentials | None = None

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, TikTokCredentials):
            raise AuthConfigError(self.platform.value, "tiktok credential bag")
        self._creds = bag

    def _require(self) -> TikTokCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _advertiser(self, account_id: str | None) -> str:
        return str(account_id or self._require().advertiser_id)

    async def _call(self, method: str, path: str, *, params: dict[str, Any] | None = None, body: Any = None) -> Any:
        headers = {"Access-Token": self._require().access_token, "Content-Type": "application/json"}
        obj = await self._http.request(method, f"{_BASE_URL}{path}", params=params, json_body=body, headers=headers)
        if not isinstance(obj, dict):
            raise PlatformApiError(self.platform.value, f"TikTok {path}: malformed response", payload=obj)
        if obj.get("code") not in (0, "0"):
            raise PlatformApiError(
                self.platform.value,
                f"TikTok {path} failed: {obj.get('code')} {obj.get('message')}",
                code=obj.get("code"),
                payload=obj,
            )
        return obj.get("data") or {}

    async def _paged(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        page = 1
        while True:
            p = dict(params)
            p.update({"page": page, "page_size": _PAGE_SIZE})
            data = await self._call("GET", path, params=p)
            out.extend(data.get("list") or [])
            total_page = to_int((data.get("page_info") or {}).get("total_page")) or 1
            if page >= total_page:
                break
            page += 1
        return out

    async def _report(self, advertiser_id: str, start: date, end: date, *, by_day: bool, campaign_ids: list[str] | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "advertiser_id": advertiser_id,
            "report_type": "BASIC",
            "data_level": "AUCTION_CAMPAIGN",
            "dimensions": json.dumps(["campaign_id", "stat_time_day"] if by_day else ["campaign_id"]),
            "metrics": json.dumps(["spend", "impressions", "clicks", "conversion", "ctr", "cpc"]),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        if campaign_ids:
            params["filtering"] = json.dumps([{"field_name": "campaign_ids", "filter_type": "IN", "filter_value": json.dumps(campaign_ids)}])
        return await self._paged("/report/integrated/get/", params)

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            accounts = await self.fetch_accounts()
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        if not accounts:
            return ConnectionResult(ok=False, error="advertiser not found")
        return ConnectionResult(ok=True, account=accounts[0])

    async def fetch_accounts(self) -> list[AccountInfo]:
        creds = self._require()
        data = await self._call(
            "GET",
            "/advertiser/info/",
            params={"advertiser_ids": json.dumps([creds.advertiser_id])},
        )
        return [
            AccountInfo(
                id=str(a.get("advertiser_id") or ""),
                name=str(a.get("name") or ""),
                currency=a.get("currency"),
                timezone=a.get("timezone"),
                status=a.get("status"),
            )
            for a in (data.get("list") or [])
        ]

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        adv = self._advertiser(account_id)
        rows = await self._paged("/campaign/get/", {"advertiser_id": adv})

        # same local day the orchestrator stamps metric rows with
        end = local_today(self._require().timezone or "UTC")
        metrics_by_id: dict[str, dict[str, Any]] = {}
        try:
            for r in await self._report(adv, end - timedelta(days=29), end, by_day=False):
                cid = str((r.get("dimensions") or {}).get("campaign_id") or "")
                metrics_by_id[cid] = r.get("metrics") or {}
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"tiktok report failed for {adv}, campaigns synced without metrics: {e}")

        out: list[CampaignData] = []
        for c in rows:
            cid = str(c.get("campaign_id") or "")
            m = metrics_by_id.get(cid)
            out.append(
                CampaignData(
                    id=cid,
                    name=str(c.get("campaign_name") or ""),
                    status=_campaign_status(c.get("operation_status") or c.get("status")),
                    budget=to_float(c.get("budget")) or None,
                    budget_type="daily" if str(c.get("budget_mode") or "").endswith("DAY") else "lifetime",
                    metrics=CampaignMetrics(
                        impressions=to_int(m.get("impressions")),
                        clicks=to_int(m.get("clicks")),
                        cost=to_float(m.get("spend")),
                        conversions=to_float(m.get("conversion")),
                        ctr=to_float(m.get("ctr")),
                        cpc=to_float(m.get("cpc")),
                    )
                    if m is not None
                    else None,
                    raw={"operation_status": c.get("operation_status"), "objective_type": c.get("objective_type")},
                )
            )
        return out

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        try:
            await self._call(
                "POST",
                "/campaign/update/status/",
                body={
                    "advertiser_id": self._advertiser(account_id),
                    "campaign_ids": [str(campaign_id)],
                    "operation_status": "ENABLE" if s == "active" else "DISABLE",
                },
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"tiktok status update failed for {campaign_id}: {e}")
            return False
        return True

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        try:
            await self._call(
                "POST",
                "/campaign/update/",
                body={"advertiser_id": self._advertiser(account_id), "campaign_id": str(campaign_id), "budget": float(amount)},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"tiktok budget update failed for {campaign_id}: {e}")
            return False
        return True

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        rows = await self._report(
            self._advertiser(account_id), date_range.start, date_range.end, by_day=True, campaign_ids=[str(campaign_id)]
        )
        out: list[DailyMetric] = []
        for r in rows:
            dims = r.get("dimensions") or {}
            m = r.get("metrics") or {}
            out.append(
                DailyMetric(
                    date=str(dims.get("stat_time_day") or "")[:10],
                    impressions=to_int(m.get("impressions")),
                    clicks=to_int(m.get("clicks")),
                    cost=to_float(m.get("spend")),
                    conversions=to_float(m.get("conversion")),
                )
            )
        out.sort(key=lambda x: x.date)
        return out
