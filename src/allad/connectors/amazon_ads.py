from __future__ import annotations

import asyncio
import gzip
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from allad.connectors.base import (
    AccountInfo,
    AmazonCredentials,
    CampaignData,
    ConnectionResult,
    CredentialBag,
    DailyMetric,
    DateRange,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform

logger = logging.getLogger(__name__)

REGION_HOSTS = {
    "NA": "https://advertising-api.amazon.com",
    "EU": "https://advertising-api-eu.amazon.com",
    "FE": "https://advertising-api-fe.amazon.com",
}

_SP_CAMPAIGN_MEDIA_TYPE = "application/vnd.spCampaign.v3+json"
_REPORT_POLL_SEC = 5.0
_REPORT_MAX_POLLS = 60


def _campaign_status(raw: str | None) -> str:
    s = str(raw or "").upper()
    if s == "ENABLED":
        return "active"
    return s.lower() or "unknown"


class AmazonAdsClient:
    """
    Amazon Ads (Sponsored Products v3) adapter.

    Requests are scoped to a profile via the Amazon-Advertising-API-Scope header;
    the host depends on the marketplace region.
    """

    platform = Platform.AMAZON

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._transport = transport
        self._timeout = timeout
        self._creds: AmazonCredentials | None = None
        self._sleep = sleep

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, AmazonCredentials):
            raise AuthConfigError(self.platform.value, "amazon credential bag")
        self._creds = bag

    def _require(self) -> AmazonCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _host(self) -> str:
        return REGION_HOSTS.get(str(self._require().region or "NA").upper(), REGION_HOSTS["NA"])

    def _headers(self, profile_id: str | None, media_type: str | None = None) -> dict[str, str]:
        creds = self._require()
        headers = {
            "Authorization": f"Bearer {creds.access_token}",
            "Amazon-Advertising-API-ClientId": creds.client_id,
            "Content-Type": media_type or "application/json",
        }
        if media_type:
            headers["Accept"] = media_type
        if profile_id:
            headers["Amazon-Advertising-API-Scope"] = str(profile_id)
        return headers

    def _profile(self, account_id: str | None) -> str:
        profile = account_id or self._require().profile_id
        if not profile:
            raise AuthConfigError(self.platform.value, "profile_id")
        return str(profile)

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            profiles = await self.fetch_accounts()
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        if not profiles:
            return ConnectionResult(ok=False, error="no advertising profiles")
        wanted = self._require().profile_id
        match = next((p for p in profiles if p.id == str(wanted)), profiles[0])
        return ConnectionResult(ok=True, account=match)

    async def fetch_accounts(self) -> list[AccountInfo]:
        rows = await self._http.request("GET", f"{self._host()}/v2/profiles", headers=self._headers(None))
        out: list[AccountInfo] = []
        for p in rows or []:
            info = p.get("accountInfo") or {}
            out.append(
                AccountInfo(
                    id=str(p.get("profileId") or ""),
                    name=str(info.get("name") or p.get("countryCode") or p.get("profileId")),
                    currency=p.get("currencyCode"),
                    timezone=p.get("timezone"),
                    status=info.get("type"),
                )
            )
        out.sort(key=lambda a: a.name.lower())
        return out

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        # Sponsored Products metrics only come from async reports, so campaigns carry none.
        profile = self._profile(account_id)
        url = f"{self._host()}/sp/campaigns/list"
        headers = self._headers(profile, _SP_CAMPAIGN_MEDIA_TYPE)
        out: list[CampaignData] = []
        next_token: str | None = None
        while True:
            body: dict[str, Any] = {"stateFilter": {"include": ["ENABLED", "PAUSED"]}, "maxResults": 100}
            if next_token:
                body["nextToken"] = next_token
            obj = await self._http.request("POST", url, json_body=body, headers=headers)
            for c in (obj or {}).get("campaigns") or []:
                budget = c.get("budget") or {}
                out.append(
                    CampaignData(
                        id=str(c.get("campaignId") or ""),
                        name=str(c.get("name") or ""),
                        status=_campaign_status(c.get("state")),
                        budget=to_float(budget.get("budget")) if budget.get("budget") is not None else None,
                        budget_type=str(budget.get("budgetType") or "DAILY").lower(),
                        raw={"state": c.get("state"), "targetingType": c.get("targetingType")},
                    )
                )
            next_token = (obj or {}).get("nextToken")
            if not next_token:
                break
        return out

    async def _update_campaign(self, profile: str, patch: dict[str, Any]) -> bool:
        obj = await self._http.request(
            "PUT",
            f"{self._host()}/sp/campaigns",
            json_body={"campaigns": [patch]},
            headers=self._headers(profile, _SP_CAMPAIGN_MEDIA_TYPE),
        )
        campaigns = ((obj or {}).get("campaigns") or {}) if isinstance(obj, dict) else {}
        return bool(campaigns.get("success")) and not campaigns.get("error")

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        try:
            return await self._update_campaign(
                self._profile(account_id),
                {"campaignId": str(campaign_id), "state": "ENABLED" if s == "active" else "PAUSED"},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"amazon status update failed for {campaign_id}: {e}")
            return False

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        try:
            return await self._update_campaign(
                self._profile(account_id),
                {"campaignId": str(campaign_id), "budget": {"budget": float(amount), "budgetType": "DAILY"}},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"amazon budget update failed for {campaign_id}: {e}")
            return False

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        profile = self._profile(account_id)
        headers = self._headers(profile)
        created = await self._http.request(
            "POST",
            f"{self._host()}/reporting/reports",
            json_body={
                "name": f"campaign {campaign_id} daily",
                "startDate": date_range.start.isoformat(),
                "endDate": date_range.end.isoformat(),
                "configuration": {
                    "adProduct": "SPONSORED_PRODUCTS",
                    "groupBy": ["campaign"],
                    "columns": ["date", "campaignId", "impressions", "clicks", "cost", "purchases7d", "sales7d"],
                    "reportTypeId": "spCampaigns",
                    "timeUnit": "DAILY",
                    "format": "GZIP_JSON",
                },
            },
            headers=headers,
        )
        report_id = str((created or {}).get("reportId") or "")
        if not report_id:
            raise PlatformApiError(self.platform.value, "report creation returned no reportId", payload=created)

        download_url: str | None = None
        for _ in range(_REPORT_MAX_POLLS):
            status = await self._http.request("GET", f"{self._host()}/reporting/reports/{report_id}", headers=headers)
            state = str((status or {}).get("status") or "").upper()
            if state == "COMPLETED":
                download_url = (status or {}).get("url")
                break
            if state == "FAILED":
                raise PlatformApiError(self.platform.value, f"report {report_id} failed", payload=status)
            await self._sleep(_REPORT_POLL_SEC)
        if not download_url:
            raise PlatformApiError(self.platform.value, f"report {report_id} did not complete in time")

        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            r = await client.get(download_url)
        if r.status_code // 100 != 2:
            raise PlatformApiError(self.platform.value, f"report download failed: {r.status_code}", status_code=r.status_code)
        rows = json.loads(gzip.decompress(r.content).decode("utf-8"))

        out = [
            DailyMetric(
                date=str(row.get("date") or ""),
                impressions=to_int(row.get("impressions")),
                clicks=to_int(row.get("clicks")),
                cost=to_float(row.get("cost")),
                conversions=to_float(row.get("purchases7d")),
                revenue=to_float(row.get("sales7d")),
            )
            for row in rows
            if str(row.get("campaignId")) == str(campaign_id)
        ]
        out.sort(key=lambda x: x.date)
        return out
