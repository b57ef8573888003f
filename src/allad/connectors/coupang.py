from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone

import httpx

from allad.connectors.base import (
    AccountInfo,
    CampaignData,
    ConnectionResult,
    CoupangCredentials,
    CredentialBag,
    DailyMetric,
    DateRange,
)
from allad.connectors.http import DEFAULT_TIMEOUT_SEC, ApiHttp
from allad.errors import AuthConfigError, PlatformApiError
from allad.platforms import Platform
from allad.repo import Repo

logger = logging.getLogger(__name__)

_BASE_URL = "https://api-gateway.coupang.com"


class CoupangClient:
    """
    Coupang has no advertising campaign API. Campaigns are manual entries kept in
    the `manual_campaigns` table; the Wing Open API keys are only used to verify
    the connection.
    """

    platform = Platform.COUPANG

    def __init__(
        self,
        repo: Repo,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ):
        self.repo = repo
        self._http = ApiHttp(self.platform.value, transport=transport, timeout=timeout)
        self._creds: CoupangCredentials | None = None

    def set_credentials(self, bag: CredentialBag) -> None:
        if not isinstance(bag, CoupangCredentials):
            raise AuthConfigError(self.platform.value, "coupang credential bag")
        self._creds = bag

    def _require(self) -> CoupangCredentials:
        if self._creds is None:
            raise AuthConfigError(self.platform.value, "credentials not set")
        return self._creds

    def _team(self) -> str:
        team = self._require().team_id
        if not team:
            raise AuthConfigError(self.platform.value, "team_id")
        return team

    def _authorization_header(self, method: str, path: str, query: str) -> str:
        creds = self._require()
        now = datetime.now(tz=timezone.utc).strftime("%y%m%dT%H%M%SZ")
        message = f"{now}{method}{path}{query}"
        signature = hmac.new(
            creds.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return (
            f"CEA algorithm=HmacSHA256, access-key={creds.access_key}, "
            f"signed-date={now}, signature={signature}"
        )

    # ---- contract ----

    async def test_connection(self) -> ConnectionResult:
        try:
            creds = self._require()
            path = f"/v2/providers/openapi/apis/api/v4/vendors/{creds.vendor_id}/returnShippingCenters"
            await self._http.request(
                "GET",
                _BASE_URL + path,
                headers={"Authorization": self._authorization_header("GET", path, "")},
            )
        except (PlatformApiError, AuthConfigError) as e:
            return ConnectionResult(ok=False, error=str(e))
        return ConnectionResult(ok=True, account=(await self.fetch_accounts())[0])

    async def fetch_accounts(self) -> list[AccountInfo]:
        vid = self._require().vendor_id
        return [AccountInfo(id=vid, name=f"Coupang {vid}", currency="KRW", timezone="Asia/Seoul")]

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        return [
            CampaignData(
                id=str(m["id"]),
                name=str(m["name"]),
                status=str(m["status"] or "active"),
                budget=m.get("budget"),
                budget_type=m.get("budget_type"),
                raw={"manual": True},
            )
            for m in self.repo.list_manual_campaigns(self._team())
        ]

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        s = str(status).lower()
        if s not in {"active", "paused"}:
            raise ValueError(f"unsupported status: {status}")
        return self.repo.update_manual_campaign(str(campaign_id), team_id=self._team(), status=s)

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        return self.repo.update_manual_campaign(str(campaign_id), team_id=self._team(), budget=float(amount))

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        # Manual campaigns have no reporting source.
        return []
