from __future__ import annotations

from typing import Callable

import httpx

from allad.connectors.amazon_ads import AmazonAdsClient
from allad.connectors.base import PlatformClient
from allad.connectors.coupang import CoupangClient
from allad.connectors.google_ads import GoogleAdsClient
from allad.connectors.kakao_moment import KakaoMomentClient
from allad.connectors.meta_ads import MetaAdsClient
from allad.connectors.naver_searchad import NaverSearchAdClient
from allad.connectors.tiktok_ads import TikTokAdsClient
from allad.errors import UnknownPlatformError
from allad.platforms import Platform, parse_platform
from allad.repo import Repo

ClientFactory = Callable[[], PlatformClient]


class PlatformServiceFactory:
    """
    Maps a platform to a constructor for its client. Each create_service call
    returns a fresh client, since clients hold per-credential state.
    """

    def __init__(self) -> None:
        self._factories: dict[Platform, ClientFactory] = {}

    def register(self, platform: Platform | str, factory: ClientFactory) -> None:
        self._factories[parse_platform(platform)] = factory

    def create_service(self, platform: Platform | str) -> PlatformClient:
        p = parse_platform(platform)
        factory = self._factories.get(p)
        if factory is None:
            raise UnknownPlatformError(p.value)
        return factory()

    def available_platforms(self) -> list[Platform]:
        return sorted(self._factories, key=lambda p: p.value)

    def is_supported(self, platform: Platform | str) -> bool:
        try:
            return parse_platform(platform) in self._factories
        except UnknownPlatformError:
            return False


def default_factory(
    repo: Repo,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = 30.0,
) -> PlatformServiceFactory:
    f = PlatformServiceFactory()
    f.register(Platform.GOOGLE, lambda: GoogleAdsClient(transport=transport, timeout=timeout))
    f.register(Platform.META, lambda: MetaAdsClient(transport=transport, timeout=timeout))
    f.register(Platform.NAVER, lambda: NaverSearchAdClient(transport=transport, timeout=timeout))
    f.register(Platform.KAKAO, lambda: KakaoMomentClient(transport=transport, timeout=timeout))
    f.register(Platform.COUPANG, lambda: CoupangClient(repo, transport=transport, timeout=timeout))
    f.register(Platform.TIKTOK, lambda: TikTokAdsClient(transport=transport, timeout=timeout))
    f.register(Platform.AMAZON, lambda: AmazonAdsClient(transport=transport, timeout=timeout))
    return f
