from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, ClassVar, Protocol

from allad.errors import AuthConfigError
from allad.platforms import Platform, parse_platform


@dataclass(frozen=True)
class AccountInfo:
    id: str
    name: str
    currency: str | None = None
    timezone: str | None = None
    is_manager: bool = False
    status: str | None = None
    level: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class CampaignMetrics:
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    revenue: float | None = None
    ctr: float | None = None
    cpc: float | None = None


@dataclass(frozen=True)
class CampaignData:
    """A campaign normalized at the adapter boundary.

    `status` is lowercase ("active", "paused", "removed", ...); the platform's own
    enum value stays in `raw`.
    """

    id: str
    name: str
    status: str
    budget: float | None = None
    budget_type: str | None = "daily"
    metrics: CampaignMetrics | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class DailyMetric:
    date: str
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    revenue: float | None = None


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @staticmethod
    def last_days(days: int, *, today: date) -> "DateRange":
        # `today` is the local date in the configured zone, never the host clock
        return DateRange(start=today - timedelta(days=max(1, days) - 1), end=today)


@dataclass(frozen=True)
class ConnectionResult:
    ok: bool
    account: AccountInfo | None = None
    error: str | None = None


def status_from_active(is_active: bool) -> str:
    return "active" if is_active else "paused"


def to_float(v: Any) -> float:
    try:
        return float(str(v).replace(",", "")) if v is not None and v != "" else 0.0
    except (TypeError, ValueError):
        return 0.0


def to_int(v: Any) -> int:
    return int(to_float(v))


# ------------------------------------------------------------------ #
# Credential bags                                                      #
# ------------------------------------------------------------------ #


def _snake(key: str) -> str:
    # stored bags mix camelCase (clientId) and snake_case (client_id)
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(key)).lower()


@dataclass(frozen=True)
class CredentialBag:
    REQUIRED: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def from_mapping(cls, platform: str, merged: dict[str, Any]) -> "CredentialBag":
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            v = merged.get(f.name)
            if v is not None and v != "":
                kwargs[f.name] = v if isinstance(v, bool) else str(v)
        missing = [name for name in cls.REQUIRED if not kwargs.get(name)]
        if missing:
            raise AuthConfigError(platform, missing)
        return cls(**kwargs)


@dataclass(frozen=True)
class GoogleCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("client_id", "client_secret", "developer_token", "refresh_token")

    client_id: str = ""
    client_secret: str = ""
    developer_token: str = ""
    refresh_token: str = ""
    customer_id: str = ""
    login_customer_id: str | None = None
    access_token: str | None = None


@dataclass(frozen=True)
class MetaCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("access_token",)

    access_token: str = ""
    account_id: str | None = None
    app_id: str | None = None
    app_secret: str | None = None
    business_id: str | None = None


@dataclass(frozen=True)
class NaverCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("api_key", "api_secret", "customer_id")

    api_key: str = ""
    api_secret: str = ""
    customer_id: str = ""


@dataclass(frozen=True)
class KakaoCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("access_token", "account_id")

    access_token: str = ""
    account_id: str = ""
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True)
class CoupangCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("access_key", "secret_key", "vendor_id")

    access_key: str = ""
    secret_key: str = ""
    vendor_id: str = ""
    team_id: str | None = None


@dataclass(frozen=True)
class TikTokCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("access_token", "advertiser_id")

    access_token: str = ""
    advertiser_id: str = ""
    app_id: str | None = None
    secret: str | None = None
    refresh_token: str | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class AmazonCredentials(CredentialBag):
    REQUIRED: ClassVar[tuple[str, ...]] = ("access_token", "client_id")

    access_token: str = ""
    client_id: str = ""
    profile_id: str | None = None
    region: str = "NA"
    refresh_token: str | None = None


CREDENTIAL_TYPES: dict[Platform, type[CredentialBag]] = {
    Platform.GOOGLE: GoogleCredentials,
    Platform.META: MetaCredentials,
    Platform.NAVER: NaverCredentials,
    Platform.KAKAO: KakaoCredentials,
    Platform.COUPANG: CoupangCredentials,
    Platform.TIKTOK: TikTokCredentials,
    Platform.AMAZON: AmazonCredentials,
}


def merge_credentials(
    platform: Platform | str,
    credentials: dict[str, Any] | None,
    settings: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> CredentialBag:
    """
    Merge the stored credential bag with the settings bag (settings win) and any
    runtime extras (resolved access token, team id), then validate.

    Raises AuthConfigError naming the fields still missing after the merge.
    """
    p = parse_platform(platform)
    merged: dict[str, Any] = {}
    for source in (credentials, settings, extra):
        for k, v in (source or {}).items():
            if v is not None and v != "":
                merged[_snake(k)] = v
    return CREDENTIAL_TYPES[p].from_mapping(p.value, merged)


class PlatformClient(Protocol):
    platform: Platform

    def set_credentials(self, bag: CredentialBag) -> None:
        """Store the resolved credential bag. No I/O."""

    async def test_connection(self) -> ConnectionResult:
        """Return (ok, account, error). Must never raise."""

    async def fetch_accounts(self) -> list[AccountInfo]:
        """List ad accounts reachable with the current credentials."""

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignData]:
        """Campaigns with trailing-window metrics attached where available."""

    async def update_campaign_status(self, account_id: str | None, campaign_id: str, status: str) -> bool:
        """`status` is "active" or "paused". Return False on a recoverable per-item failure."""

    async def update_campaign_budget(self, account_id: str | None, campaign_id: str, amount: float) -> bool:
        """Set the campaign budget in currency units."""

    async def fetch_campaign_metrics(
        self, account_id: str | None, campaign_id: str, date_range: DateRange
    ) -> list[DailyMetric]:
        """Day-granularity series for one campaign."""
