from __future__ import annotations

from dataclasses import dataclass, field

from allad.errors import UnknownPlatformError
from allad.platforms import Platform, parse_platform

META_GRAPH_VERSION = "v23.0"


@dataclass(frozen=True)
class OAuthConfig:
    platform: Platform
    authorization_url: str
    token_url: str
    scopes: tuple[str, ...]
    scope_separator: str = " "
    # "form": POST x-www-form-urlencoded, "json": POST JSON envelope, "get": query-string GET
    token_method: str = "form"
    client_id_param: str = "client_id"
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    supports_pkce: bool = False


OAUTH_CONFIGS: dict[Platform, OAuthConfig] = {
    Platform.GOOGLE: OAuthConfig(
        platform=Platform.GOOGLE,
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=(
            "https://www.googleapis.com/auth/adwords",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ),
        extra_auth_params={"access_type": "offline", "prompt": "consent select_account"},
    ),
    Platform.META: OAuthConfig(
        platform=Platform.META,
        authorization_url=f"https://www.facebook.com/{META_GRAPH_VERSION}/dialog/oauth",
        token_url=f"https://graph.facebook.com/{META_GRAPH_VERSION}/oauth/access_token",
        scopes=("ads_management", "ads_read", "business_management", "pages_read_engagement"),
        scope_separator=",",
        token_method="get",
        supports_pkce=True,
    ),
    Platform.KAKAO: OAuthConfig(
        platform=Platform.KAKAO,
        authorization_url="https://kauth.kakao.com/oauth/authorize",
        token_url="https://kauth.kakao.com/oauth/token",
        scopes=("moment:read", "moment:write"),
        scope_separator=",",
    ),
    Platform.AMAZON: OAuthConfig(
        platform=Platform.AMAZON,
        authorization_url="https://www.amazon.com/ap/oa",
        token_url="https://api.amazon.com/auth/o2/token",
        scopes=("advertising::campaign_management",),
    ),
    Platform.TIKTOK: OAuthConfig(
        platform=Platform.TIKTOK,
        authorization_url="https://business-api.tiktok.com/open_api/v1.3/oauth2/authorize/",
        token_url="https://business-api.tiktok.com/open_api/v1.3/oauth2/access_token/",
        scopes=("ad.group.read", "ad.group.write", "campaign.read", "campaign.write"),
        scope_separator=",",
        token_method="json",
        client_id_param="app_id",
    ),
}


def get_oauth_config(platform: Platform | str) -> OAuthConfig:
    key = parse_platform(platform)
    cfg = OAUTH_CONFIGS.get(key)
    if cfg is None:
        # Naver and Coupang authenticate with static API keys, not OAuth.
        raise UnknownPlatformError(f"{key.value} (no OAuth flow)")
    return cfg
