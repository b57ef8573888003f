from __future__ import annotations

import logging
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
    KakaoCredentials,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform

logger = logging.getLogger(__name__)

_BASE_URL = "https://apis.moment.kakao.com/openapi/v4"


def _content(obj: Any) -> list[dict[str, Any]]:
    if isinstance(obj, list):
        return [x for x in obj if isinstance(x, dict)]
    if isinstance(obj, dict):
        return [x for x in (obj.get("content") or obj.get("data") or []) if isinstance(x, dict)]
    return []


def _campaign_status(c: dict[str, Any]) -> str:
    config = str(c.get("config") or "").upper()
    if config == "ON":
        return "active"
    if config == "OFF":
        return "paused"
    if config == "DEL":
        return "removed"
    return config.lower() or "unknown"


def _metric_values(m: dict[str, Any]) -> dict[str, Any]:
    return {
        "impressions": to_int(m.get("imp")),
        "clicks": to_int(m.get("click")),
        "cost": to_float(m.get("cost")),
        "conversions": to_float(m.get("conv_purchase_7d")),
        "revenue": to_float(m.get("conv_purchase_p_7d")),
    }


class KakaoMomentClient:
    """Kakao Moment API adapter. Bearer token plus an adAccountId header per request."""

    platform = Platform.KAKAO

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = DEFAULT_TIMEOUT_SEC):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: KakaoCredentials | None = None

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, KakaoCredentials):
            raise AuthConfigError(self.platform.value, "kakao credential bag")
        self._creds = bag

    def _require(self) -> KakaoCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    async def _call(
        self,
        method: str,
        path: str,
        *,
        account_id: str | None = None,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        creds = self._require()
        headers = {"Authorization": f"Bearer {creds.access_token}"}
        acc = account_id or creds.account_id
        if acc:
            headers["adAccountId"] = str(acc)
        return await self._http.request(method, f"{_BASE_URL}{path}", params=params, json_body=body, headers=headers)

    async def _report(self, account_id: str | None, campaign_ids: list[str], params: dict[str, Any]) -> list[dict[str, Any]]:
        if not campaign_ids:
            return []
        p = {"campaignId": ",".join(campaign_ids), "metricsGroups": "BASIC,PIXEL_SDK_CONVERSION"}
        p.update(params)
        return _content(await self._call("GET", "/campaigns/report", account_id=account_id, params=p))

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            accounts = await self.fetch_accounts()
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        wanted = str(self._require().account_id)
        match = next((a for a in accounts if a.id == wanted), None)
        if match is None:
            return ConnectionResult(ok=False, error=f"ad account {wanted} not accessible")
        return ConnectionResult(ok=True, account=match)

    async def fetch_accounts(self) -> list[AccountInfo]:
        rows = _content(await self._call("GET", "/adAccounts"))
        out = [
            AccountInfo(
                id=str(a.get("id") or ""),
                name=str(a.get("name") or ""),
                currency="KRW",
                timezone="Asia/Seoul",
                status=a.get("config"),
            )
            for a in rows
        ]
        out.sort(key=lambda a: a.name.lower())
        return out

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        rows = _content(await self._call("GET", "/campaigns", account_id=account_id))
        ids = [str(c.get("id")) for c in rows if c.get("id") is not None]

        metrics_by_id: dict[str, dict[str, Any]] = {}
        try:
            for r in await self._report(account_id, ids, {"datePreset": "LAST_30DAY"}):
                cid = str((r.get("dimensions") or {}).get("campaign_id") or "")
                metrics_by_id[cid] = r.get("metrics") or {}
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"kakao report failed, campaigns synced without metrics: {e}")

        out: list[CampaignData] = []
        for c in rows:
            cid = str(c.get("id") or "")
            m = metrics_by_id.get(cid)
            budget = c.get("dailyBudgetAmount")
            out.append(
                CampaignData(
                    id=cid,
                    name=str(c.get("name") or ""),
                    status=_campaign_status(c),
                    budget=to_float(budget) if budget is not None else None,
                    budget_type="daily" if budget is not None else None,
                    metrics=CampaignMetrics(**_metric_values(m)) if m is not None else None,
                    raw={"config": c.get("config"), "statusDescription": c.get("statusDescription")},
                )
            )
        return out

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        try:
            await self._call(
                "PUT",
                "/campaigns/onOff",
                account_id=account_id,
                body={"id": int(campaign_id), "config": "ON" if s == "active" else "OFF"},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"kakao status update failed for {campaign_id}: {e}")
            return False
        return True

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        try:
            await self._call(
                "PUT",
                "/campaigns/dailyBudgetAmount",
                account_id=account_id,
                body={"id": int(campaign_id), "dailyBudgetAmount": int(amount)},
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"kakao budget update failed for {campaign_id}: {e}")
            return False
        return True

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        rows = await self._report(
            account_id,
            [str(campaign_id)],
            {
                "start": date_range.start.strftime("%Y%m%d"),
                "end": date_range.end.strftime("%Y%m%d"),
                "timeUnit": "DAY",
            },
        )
        out: list[DailyMetric] = []
        for r in rows:
            day = str(r.get("start") or (r.get("dimensions") or {}).get("start") or "")
            if len(day) == 8 and day.isdigit():
                day = f"{day[0:4]}-{day[4:6]}-{day[6:8]}"
            out.append(DailyMetric(date=day, **_metric_values(r.get("metrics") or {})))
        out.sort(key=lambda x: x.date)
        return out
