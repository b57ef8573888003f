from __future__ import annotations

from enum import Enum

from allad.errors import UnknownPlatformError


class Platform(str, Enum):
    GOOGLE = "google"
    META = "meta"
    NAVER = "naver"
    KAKAO = "kakao"
    COUPANG = "coupang"
    TIKTOK = "tiktok"
    AMAZON = "amazon"

    def __str__(self) -> str:
        return self.value


_ALIASES = {
    "facebook": Platform.META,
    "google_ads": Platform.GOOGLE,
    "google-ads": Platform.GOOGLE,
    "meta-ads": Platform.META,
}

# Platforms whose stored credential carries an OAuth refresh token.
REFRESHABLE = frozenset({Platform.GOOGLE, Platform.META, Platform.KAKAO, Platform.TIKTOK, Platform.AMAZON})


def parse_platform(raw: str | Platform) -> Platform:
    """Resolve a platform identifier, raising UnknownPlatformError for anything unsupported."""
    if isinstance(raw, Platform):
        return raw
    key = str(raw or "").strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Platform(key)
    except ValueError:
        raise UnknownPlatformError(key) from None
