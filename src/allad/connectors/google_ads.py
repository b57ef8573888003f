from __future__ import annotations

import logging
import re
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
    GoogleCredentials,
    to_float,
    to_int,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_VERSION = "v20"
_BASE_URL = f"https://googleads.googleapis.com/{GOOGLE_ADS_API_VERSION}"
_TOKEN_URL = "https://oauth2.googleapis.com/token"

_STATUS_TO_GOOGLE = {"active": "ENABLED", "paused": "PAUSED"}

_CUSTOMER_CLIENT_QUERY = """
    SELECT
      customer_client.client_customer,
      customer_client.id,
      customer_client.descriptive_name,
      customer_client.currency_code,
      customer_client.time_zone,
      customer_client.manager,
      customer_client.test_account,
      customer_client.status,
      customer_client.level,
      customer_client.hidden
    FROM customer_client
    WHERE customer_client.level <= 1
"""

_CUSTOMER_QUERY = """
    SELECT
      customer.id,
      customer.descriptive_name,
      customer.currency_code,
      customer.time_zone,
      customer.manager
    FROM customer
    LIMIT 1
"""

_CAMPAIGNS_QUERY = """
    SELECT
      campaign.id,
      campaign.name,
      campaign.status,
      campaign_budget.amount_micros,
      metrics.impressions,
      metrics.clicks,
      metrics.cost_micros,
      metrics.conversions,
      metrics.conversions_value,
      metrics.ctr,
      metrics.average_cpc
    FROM campaign
    WHERE segments.date DURING LAST_30_DAYS
      AND campaign.status != 'REMOVED'
    ORDER BY campaign.name
"""


def _normalize_customer_id(raw: str) -> str:
    # Google Ads customer id is digits only (UI shows hyphens).
    return re.sub(r"\D+", "", str(raw or ""))


def _cost_micros_to_currency(cost_micros: Any) -> float:
    return to_float(cost_micros) / 1_000_000.0


def _campaign_status(raw: str) -> str:
    s = str(raw or "").upper()
    if s == "ENABLED":
        return "active"
    return s.lower() or "unknown"


def _account_from_customer_client(row: dict[str, Any]) -> AccountInfo:
    cc = row.get("customerClient") or {}
    return AccountInfo(
        id=str(cc.get("id") or ""),
        name=str(cc.get("descriptiveName") or f"Account {cc.get('id')}"),
        currency=cc.get("currencyCode"),
        timezone=cc.get("timeZone"),
        is_manager=bool(cc.get("manager")),
        status=cc.get("status"),
        level=to_int(cc.get("level")),
    )


def _account_from_customer(row: dict[str, Any]) -> AccountInfo:
    c = row.get("customer") or {}
    return AccountInfo(
        id=str(c.get("id") or ""),
        name=str(c.get("descriptiveName") or f"Account {c.get('id')}"),
        currency=c.get("currencyCode"),
        timezone=c.get("timeZone"),
        is_manager=bool(c.get("manager")),
        level=0,
    )


class GoogleAdsClient:
    """
    Google Ads adapter over the REST interface (googleAds:search / googleAds:mutate).

    `login_customer_id` is the MCC the request is made through; `customer_id`
    is the account being read or changed.
    """

    platform = Platform.GOOGLE

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = DEFAULT_TIMEOUT_SEC):
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: GoogleCredentials | None = None
        self._access_token: str | None = None

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, GoogleCredentials):
            raise AuthConfigError(self.platform.value, "google credential bag")
        self._creds = bag
        self._access_token = bag.access_token

    def _require(self) -> GoogleCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _customer_id(self, account_id: str | None = None) -> str:
        creds = self._require()
        cid = _normalize_customer_id(account_id or creds.customer_id or creds.login_customer_id or "")
        if not cid:
            raise AuthConfigError(self.platform.value, "customer_id")
        return cid

    async def _token(self) -> str:
        if self._access_token:
            return self._access_token
        creds = self._require()
        # No pre-resolved token: mint one from the stored refresh token.
        payload = await self._http.request(
            "POST",
            _TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
            },
        )
        token = (payload or {}).get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise PlatformApiError(self.platform.value, "token endpoint returned no access_token", payload=payload)
        self._access_token = str(token)
        return self._access_token

    async def _headers(self) -> dict[str, str]:
        creds = self._require()
        headers = {
            "Authorization": f"Bearer {await self._token()}",
            "developer-token": creds.developer_token,
            "Content-Type": "application/json",
        }
        if creds.login_customer_id:
            headers["login-customer-id"] = _normalize_customer_id(creds.login_customer_id)
        return headers

    async def search(self, customer_id: str, query: str) -> list[dict[str, Any]]:
        url = f"{_BASE_URL}/customers/{customer_id}/googleAds:search"
        headers = await self._headers()
        rows: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            body: dict[str, Any] = {"query": " ".join(query.split())}
            if page_token:
                body["pageToken"] = page_token
            payload = await self._http.request("POST", url, json_body=body, headers=headers)
            if not isinstance(payload, dict):
                break
            rows.extend(payload.get("results") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return rows

    async def mutate(self, customer_id: str, operations: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Apply `{entity, operation, resource, update_mask}` operations.

        Each is translated to the REST mutateOperations shape, e.g.
        {"campaignOperation": {"update": {...}, "updateMask": "status"}}.
        """
        rest_ops = []
        for op in operations:
            entity = _camel(str(op["entity"]))
            resource = {_camel(k): v for k, v in dict(op.get("resource") or {}).items()}
            inner: dict[str, Any] = {str(op["operation"]): resource}
            paths = (op.get("update_mask") or {}).get("paths") or []
            if paths:
                inner["updateMask"] = ",".join(_camel_path(p) for p in paths)
            rest_ops.append({f"{entity}Operation": inner})

        url = f"{_BASE_URL}/customers/{customer_id}/googleAds:mutate"
        payload = await self._http.request(
            "POST", url, json_body={"mutateOperations": rest_ops}, headers=await self._headers()
        )
        return payload if isinstance(payload, dict) else {}

    async def list_accessible_customers(self) -> list[str]:
        """Customer ids the OAuth user can reach directly, in the order Google returns them."""
        headers = await self._headers()
        # the call is not made through an MCC
        headers.pop("login-customer-id", None)
        payload = await self._http.request("GET", f"{_BASE_URL}/customers:listAccessibleCustomers", headers=headers)
        names = (payload or {}).get("resourceNames") if isinstance(payload, dict) else None
        ids = [_normalize_customer_id(str(n).removeprefix("customers/")) for n in names or []]
        return [i for i in ids if i]

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            cid = self._customer_id()
            rows = await self.search(cid, _CUSTOMER_QUERY)
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        if not rows:
            return ConnectionResult(ok=False, error="customer not found")
        return ConnectionResult(ok=True, account=_account_from_customer(rows[0]))

    async def fetch_accounts(self) -> list[AccountInfo]:
        creds = self._require()
        if not _normalize_customer_id(creds.customer_id or creds.login_customer_id or ""):
            return await self._discover_accounts()
        cid = self._customer_id()
        accounts: list[AccountInfo] = []
        try:
            if creds.login_customer_id:
                for row in await self.search(_normalize_customer_id(creds.login_customer_id), _CUSTOMER_CLIENT_QUERY):
                    acc = _account_from_customer_client(row)
                    if acc.id and not (row.get("customerClient") or {}).get("hidden"):
                        accounts.append(acc)

            seen = {a.id for a in accounts}
            for row in await self.search(cid, _CUSTOMER_QUERY):
                acc = _account_from_customer(row)
                if acc.id and acc.id not in seen:
                    accounts.append(acc)
                    seen.add(acc.id)
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"google account hierarchy query failed, falling back: {e}")
            accounts = [_account_from_customer(row) for row in await self.search(cid, _CUSTOMER_QUERY)]

        accounts.sort(key=lambda a: (not a.is_manager, a.name.lower()))
        return accounts

    async def _discover_accounts(self) -> list[AccountInfo]:
        accounts: list[AccountInfo] = []
        for cid in await self.list_accessible_customers():
            try:
                rows = await self.search(cid, _CUSTOMER_QUERY)
            except PlatformApiError as e:
                # 403 here means a cancelled or unlinked account, not a bad token
                if e.needs_reauth and e.status_code != 403:
                    raise
                logger.warning(f"google customer {cid} not readable, skipped: {e}")
                continue
            if rows:
                accounts.append(_account_from_customer(rows[0]))
        return accounts

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        cid = self._customer_id(account_id)
        out: list[CampaignData] = []
        for row in await self.search(cid, _CAMPAIGNS_QUERY):
            c = row.get("campaign") or {}
            m = row.get("metrics") or {}
            budget = row.get("campaignBudget") or {}
            out.append(
                CampaignData(
                    id=str(c.get("id") or ""),
                    name=str(c.get("name") or ""),
                    status=_campaign_status(c.get("status")),
                    budget=_cost_micros_to_currency(budget.get("amountMicros")) if budget.get("amountMicros") else None,
                    budget_type="daily",
                    metrics=CampaignMetrics(
                        impressions=to_int(m.get("impressions")),
                        clicks=to_int(m.get("clicks")),
                        cost=_cost_micros_to_currency(m.get("costMicros")),
                        conversions=to_float(m.get("conversions")),
                        revenue=to_float(m.get("conversionsValue")),
                        ctr=to_float(m.get("ctr")),
                        cpc=_cost_micros_to_currency(m.get("averageCpc")),
                    ),
                    raw={"status": c.get("status"), "customer_id": cid},
                )
            )
        return out

    async def _campaign_row(self, cid: str, campaign_id: str) -> dict[str, Any] | None:
        query = f"""
            SELECT campaign.id, campaign.status, campaign.campaign_budget
            FROM campaign
            WHERE campaign.id = {int(campaign_id)}
        """
        rows = await self.search(cid, query)
        return rows[0] if rows else None

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        google_status = _STATUS_TO_GOOGLE.get(str(status).lower())
        if google_status is None:
            raise ValueError(f"unsupported status: {status}")
        cid = self._customer_id(account_id)
        try:
            if await self._campaign_row(cid, campaign_id) is None:
                logger.warning(f"google campaign {campaign_id} not found in {cid}")
                return False
            await self.mutate(
                cid,
                [
                    {
                        "entity": "campaign",
                        "operation": "update",
                        "resource": {
                            "resource_name": f"customers/{cid}/campaigns/{campaign_id}",
                            "status": google_status,
                        },
                        "update_mask": {"paths": ["status"]},
                    }
                ],
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"google status update failed for {campaign_id}: {e}")
            return False
        return True

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        cid = self._customer_id(account_id)
        try:
            row = await self._campaign_row(cid, campaign_id)
            budget_resource = ((row or {}).get("campaign") or {}).get("campaignBudget")
            if not budget_resource:
                return False
            await self.mutate(
                cid,
                [
                    {
                        "entity": "campaign_budget",
                        "operation": "update",
                        "resource": {
                            "resource_name": budget_resource,
                            "amount_micros": str(int(round(float(amount) * 1_000_000))),
                        },
                        "update_mask": {"paths": ["amount_micros"]},
                    }
                ],
            )
        except PlatformApiError as e:
            if e.needs_reauth:
                raise
            logger.warning(f"google budget update failed for {campaign_id}: {e}")
            return False
        return True

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        cid = self._customer_id(account_id)
        query = f"""
            SELECT
              segments.date,
              metrics.impressions,
              metrics.clicks,
              metrics.cost_micros,
              metrics.conversions,
              metrics.conversions_value
            FROM campaign
            WHERE campaign.id = {int(campaign_id)}
              AND segments.date BETWEEN '{date_range.start.isoformat()}' AND '{date_range.end.isoformat()}'
            ORDER BY segments.date
        """
        out: list[DailyMetric] = []
        for row in await self.search(cid, query):
            m = row.get("metrics") or {}
            out.append(
                DailyMetric(
                    date=str((row.get("segments") or {}).get("date") or ""),
                    impressions=to_int(m.get("impressions")),
                    clicks=to_int(m.get("clicks")),
                    cost=_cost_micros_to_currency(m.get("costMicros")),
                    conversions=to_float(m.get("conversions")),
                    revenue=to_float(m.get("conversionsValue")),
                )
            )
        return out


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _camel_path(path: str) -> str:
    return ".".join(_camel(p) for p in path.split("."))
