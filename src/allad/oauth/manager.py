from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from allad.config import Settings
from allad.errors import AuthConfigError, TokenExchangeError, TokenRefreshError
from allad.oauth.configs import OAuthConfig, get_oauth_config
from allad.platforms import Platform
from allad.repo import Repo
from allad.tokens.store import ScopeKey, TokenRecord, TokenStore
from allad.util import now_utc_iso

logger = logging.getLogger(__name__)

# An access token is never handed out inside this window before its expiry.
REFRESH_BUFFER_MS = 5 * 60 * 1000


class OAuthManager:
    """
    OAuth2 lifecycle for one platform: authorization URL, code exchange,
    refresh, storage and valid-token retrieval with refresh-on-expiry.

    Each call makes at most one attempt against the token endpoint; retries are
    the caller's decision.
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        token_store: TokenStore,
        repo: Repo,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.config = config
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_store = token_store
        self.repo = repo
        self._transport = transport
        self._timeout = timeout

    @property
    def platform(self) -> Platform:
        return self.config.platform

    def _require_client(self, *, secret: bool = True) -> None:
        missing = []
        if not self.client_id:
            missing.append("client_id")
        if secret and not self.client_secret:
            missing.append("client_secret")
        if missing:
            raise AuthConfigError(self.platform.value, missing)

    # ---- authorization ----

    def build_authorization_url(self, state: str, *, code_challenge: str | None = None) -> str:
        self._require_client(secret=False)
        cfg = self.config
        params: dict[str, str] = {
            cfg.client_id_param: str(self.client_id),
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": cfg.scope_separator.join(cfg.scopes),
            "state": state,
        }
        params.update(cfg.extra_auth_params)
        if code_challenge and cfg.supports_pkce:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{cfg.authorization_url}?{urlencode(params)}"

    # ---- token endpoint ----

    async def _call_token_endpoint(self, params: dict[str, Any]) -> tuple[int, Any, str]:
        cfg = self.config
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            if cfg.token_method == "get":
                r = await client.get(cfg.token_url, params=params)
            elif cfg.token_method == "json":
                r = await client.post(cfg.token_url, json=params)
            else:
                r = await client.post(
                    cfg.token_url,
                    data=params,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        body = r.text or ""
        try:
            payload = r.json()
        except ValueError:
            payload = None
        return r.status_code, payload, body

    def _unwrap(self, status: int, payload: Any) -> dict[str, Any] | None:
        """Return the token payload, or None when the provider rejected the grant."""
        if status // 100 != 2 or not isinstance(payload, dict):
            return None
        if self.config.token_method == "json":
            # TikTok wraps everything in {code, message, data}
            if payload.get("code") not in (0, "0"):
                return None
            data = payload.get("data")
            return data if isinstance(data, dict) else None
        if payload.get("error"):
            return None
        return payload

    async def exchange_code_for_tokens(self, code: str, *, code_verifier: str | None = None) -> TokenRecord:
        cfg = self.config
        if cfg.token_method == "json":
            self._require_client()
            params: dict[str, Any] = {"app_id": self.client_id, "secret": self.client_secret, "auth_code": code}
        elif cfg.token_method == "get":
            self._require_client(secret=False)
            params = {"client_id": self.client_id, "redirect_uri": self.redirect_uri, "code": code}
            # confidential vs PKCE flow: exactly one of secret or verifier goes on the wire
            if code_verifier:
                params["code_verifier"] = code_verifier
            elif self.client_secret:
                params["client_secret"] = self.client_secret
            else:
                raise AuthConfigError(self.platform.value, ["client_secret|code_verifier"])
        else:
            self._require_client()
            params = {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            }
            if code_verifier and cfg.supports_pkce:
                params["code_verifier"] = code_verifier

        status, payload, body = await self._call_token_endpoint(params)
        data = self._unwrap(status, payload)
        if data is None or not data.get("access_token"):
            logger.error(f"{self.platform} token exchange rejected: status={status} body={body[:500]}")
            raise TokenExchangeError(self.platform.value, body, status)
        return TokenRecord.from_grant(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenRecord:
        self._require_client()
        cfg = self.config
        if cfg.token_method == "json":
            params: dict[str, Any] = {
                "app_id": self.client_id,
                "secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        elif cfg.token_method == "get":
            # Meta has no refresh grant; a still-valid token is swapped for a long-lived one.
            params = {
                "grant_type": "fb_exchange_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "fb_exchange_token": refresh_token,
            }
        else:
            params = {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }

        status, payload, body = await self._call_token_endpoint(params)
        data = self._unwrap(status, payload)
        if data is None or not data.get("access_token"):
            logger.error(f"{self.platform} token refresh rejected: status={status} body={body[:500]}")
            raise TokenRefreshError(self.platform.value, body, status)
        return TokenRecord.from_grant(data)

    # ---- storage ----

    async def store_tokens(self, scope: ScopeKey, record: TokenRecord) -> None:
        await self.token_store.put(scope, record)
        if scope.credential_id:
            self.repo.update_credential_data(
                scope.credential_id,
                {"connected": True, "connected_at": now_utc_iso(), "scope": record.scope},
                is_active=True,
            )
            self.repo.update_credential_sync_status(scope.credential_id, ok=True, error=None)

    async def get_valid_access_token(self, scope: ScopeKey) -> str | None:
        async with self.token_store.lock(scope):
            current = await self.token_store.get(scope)
            if current is None:
                return None
            if not current.expires_within(REFRESH_BUFFER_MS):
                return current.access_token
            if not current.refresh_token:
                logger.info(f"{scope.cache_key}: token expiring and no refresh token")
                return None
            return await self._refresh_locked(scope, current)

    async def force_refresh(self, scope: ScopeKey, *, rejected_token: str | None = None) -> str | None:
        """
        Refresh after the platform rejected a token that still looked valid.

        If another task already rotated the token since `rejected_token` was read,
        the newer token is returned without a second refresh.
        """
        async with self.token_store.lock(scope):
            current = await self.token_store.get(scope)
            if current is None or not current.refresh_token:
                return None
            if rejected_token and current.access_token != rejected_token and not current.expires_within(REFRESH_BUFFER_MS):
                return current.access_token
            return await self._refresh_locked(scope, current)

    async def refresh_scope(self, scope: ScopeKey, *, window_ms: int) -> str | None:
        """
        Refresh if the token expires within `window_ms`; used by the refresh job.

        Errors propagate so the caller can tell a rejected grant (TokenRefreshError)
        from a network or configuration failure. Returns None when there is
        nothing to refresh.
        """
        async with self.token_store.lock(scope):
            current = await self.token_store.get(scope)
            if current is None or not current.refresh_token:
                return None
            # another worker may have rotated it while we waited for the lock
            if not current.expires_within(window_ms):
                return current.access_token
            return await self._rotate(scope, current)

    async def _rotate(self, scope: ScopeKey, current: TokenRecord) -> str:
        fresh = await self.refresh_access_token(str(current.refresh_token))
        await self.store_tokens(scope, fresh.with_refresh_token(current.refresh_token))
        logger.info(f"{scope.cache_key}: access token refreshed")
        return fresh.access_token

    async def _refresh_locked(self, scope: ScopeKey, current: TokenRecord) -> str | None:
        try:
            return await self._rotate(scope, current)
        except (TokenRefreshError, AuthConfigError, httpx.HTTPError) as e:
            logger.error(f"{scope.cache_key}: refresh failed: {type(e).__name__}")
            return None

    async def auth_status(self, scope: ScopeKey) -> str:
        current = await self.token_store.get(scope)
        if current is None:
            return "disconnected"
        if not current.expires_within(REFRESH_BUFFER_MS):
            return "connected"
        if current.refresh_token:
            return "expiring"
        return "needs_reauth"

    async def revoke(self, scope: ScopeKey) -> None:
        await self.token_store.delete(scope)


def build_oauth_manager(
    platform: Platform | str,
    *,
    settings: Settings,
    token_store: TokenStore,
    repo: Repo,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OAuthManager:
    cfg = get_oauth_config(platform)
    client_id, client_secret = settings.oauth_client(cfg.platform.value)
    return OAuthManager(
        cfg,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=settings.redirect_uri(cfg.platform.value),
        token_store=token_store,
        repo=repo,
        transport=transport,
        timeout=settings.http_timeout_sec,
    )
