from __future__ import annotations

import logging
from typing import Any

import httpx

from allad.errors import PlatformApiError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0


class ApiHttp:
    """
    Thin httpx wrapper shared by the platform adapters.

    One AsyncClient per call keeps adapters free of lifecycle management; the
    transport is injectable so tests can swap in httpx.MockTransport.
    """

    def __init__(
        self,
        platform: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ):
        self.platform = platform
        self.transport = transport
        self.timeout = timeout

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                r = await client.request(method, url, params=params, json=json_body, data=data, headers=headers)
            except httpx.TimeoutException as e:
                raise PlatformApiError(self.platform, f"{method} {url} timed out after {self.timeout}s") from e
            except httpx.HTTPError as e:
                raise PlatformApiError(self.platform, f"{method} {url} failed: {type(e).__name__}") from e

        payload: Any = None
        if r.content:
            try:
                payload = r.json()
            except ValueError:
                payload = r.text

        if r.status_code // 100 != 2:
            body = (r.text or "").strip()[:4000]
            code = _error_code(payload)
            logger.warning(f"{self.platform} API {method} {url} -> {r.status_code}")
            raise PlatformApiError(
                self.platform,
                f"{self.platform} API {method} {_path(url)} failed: {r.status_code} {body}",
                status_code=r.status_code,
                code=code,
                payload=payload,
            )
        return payload


def _path(url: str) -> str:
    return httpx.URL(url).path


def _error_code(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict):
        return err.get("code")
    return payload.get("code")
