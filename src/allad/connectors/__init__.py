from allad.connectors.base import (
    AccountInfo,
    CampaignData,
    CampaignMetrics,
    ConnectionResult,
    CredentialBag,
    DailyMetric,
    DateRange,
    PlatformClient,
    merge_credentials,
)
from allad.connectors.amazon_ads import AmazonAdsClient
from allad.connectors.coupang import CoupangClient
from allad.connectors.google_ads import GoogleAdsClient
from allad.connectors.kakao_moment import KakaoMomentClient
from allad.connectors.meta_ads import MetaAdsClient
from allad.connectors.naver_searchad import NaverSearchAdClient
from allad.connectors.tiktok_ads import TikTokAdsClient

__all__ = [
    "AccountInfo",
    "CampaignData",
    "CampaignMetrics",
    "ConnectionResult",
    "CredentialBag",
    "DailyMetric",
    "DateRange",
    "PlatformClient",
    "merge_credentials",
    "GoogleAdsClient",
    "MetaAdsClient",
    "NaverSearchAdClient",
    "KakaoMomentClient",
    "CoupangClient",
    "TikTokAdsClient",
    "AmazonAdsClient",
]
