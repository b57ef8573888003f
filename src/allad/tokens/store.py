from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from allad.repo import Repo
from allad.tokens.cache import TokenCache
from allad.util import now_ms

logger = logging.getLogger(__name__)

# Cache entries with a refresh token but no refresh expiry live this long.
DEFAULT_REFRESHABLE_TTL_SEC = 30 * 24 * 3600

# Upper bound on one read-refresh-store sequence holding the shared lock.
REFRESH_LOCK_TIMEOUT_SEC = 30


@dataclass(frozen=True)
class ScopeKey:
    """Identifies one token record: (platform, user or team, external account).

    `credential_id` is not part of the cache key; it points at the durable row
    the token is mirrored into.
    """

    platform: str
    owner_id: str
    account_id: str
    credential_id: str | None = None

    @property
    def cache_key(self) -> str:
        return f"oauth:{self.platform}:{self.owner_id}:{self.account_id}:tokens"

    @property
    def lock_key(self) -> tuple[str, str, str]:
        return (self.platform, self.owner_id, self.account_id)


@dataclass(frozen=True)
class TokenRecord:
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None  # epoch ms; None means the token does not expire
    refresh_expires_at: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def expires_within(self, buffer_ms: int, *, now: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now_ms() if now is None else now
        return self.expires_at - current <= buffer_ms

    def with_refresh_token(self, fallback: str | None) -> "TokenRecord":
        if self.refresh_token or not fallback:
            return self
        return TokenRecord(
            access_token=self.access_token,
            refresh_token=fallback,
            expires_at=self.expires_at,
            refresh_expires_at=self.refresh_expires_at,
            token_type=self.token_type,
            scope=self.scope,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "refresh_expires_at": self.refresh_expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @staticmethod
    def from_dict(d: dict[str, Any] | None) -> "TokenRecord | None":
        if not isinstance(d, dict) or not d.get("access_token"):
            return None
        return TokenRecord(
            access_token=str(d["access_token"]),
            refresh_token=d.get("refresh_token") or None,
            expires_at=_to_int_or_none(d.get("expires_at")),
            refresh_expires_at=_to_int_or_none(d.get("refresh_expires_at")),
            token_type=str(d.get("token_type") or "Bearer"),
            scope=d.get("scope"),
        )

    @staticmethod
    def from_grant(payload: dict[str, Any], *, now: int | None = None) -> "TokenRecord":
        """Build a record from a standard OAuth2 token endpoint response."""
        current = now_ms() if now is None else now
        expires_in = payload.get("expires_in")
        refresh_expires_in = payload.get("refresh_token_expires_in")
        return TokenRecord(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=payload.get("refresh_token") or None,
            expires_at=current + int(expires_in) * 1000 if expires_in else None,
            refresh_expires_at=current + int(refresh_expires_in) * 1000 if refresh_expires_in else None,
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=payload.get("scope"),
        )


def _to_int_or_none(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


class TokenStore:
    """
    Token material lives in the fast cache, mirrored into the credential row's
    data bag (`oauth_tokens`) so it survives cache loss.
    """

    def __init__(self, cache: TokenCache, repo: Repo):
        self.cache = cache
        self.repo = repo
        # lock_key -> (lock, tasks holding or waiting on it)
        self._locks: dict[tuple[str, str, str], tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def lock(self, scope: ScopeKey) -> AsyncIterator[None]:
        """
        Per-scope critical section for read-refresh-store sequences.

        Tasks in this process queue on an asyncio.Lock; other processes sharing
        the cache (web and worker) are kept out by the cache's own lock.
        """
        key = scope.lock_key
        lk, users = self._locks.get(key, (None, 0))
        if lk is None:
            lk = asyncio.Lock()
        self._locks[key] = (lk, users + 1)
        try:
            async with lk:
                async with self.cache.lock(scope.cache_key, timeout=REFRESH_LOCK_TIMEOUT_SEC):
                    yield
        finally:
            lk, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lk, users - 1)

    async def get(self, scope: ScopeKey) -> TokenRecord | None:
        try:
            cached = await self.cache.get(scope.cache_key)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"token cache read failed for {scope.cache_key}: {type(e).__name__}")
            cached = None
        rec = TokenRecord.from_dict(cached)
        if rec is not None:
            return rec

        if not scope.credential_id:
            return None
        cred = self.repo.get_credential(scope.credential_id)
        if not cred:
            return None
        return TokenRecord.from_dict(cred["data"].get("oauth_tokens"))

    async def put(self, scope: ScopeKey, record: TokenRecord) -> None:
        # Durable write first: it must succeed for the store to count as done.
        if scope.credential_id:
            self.repo.update_credential_data(scope.credential_id, {"oauth_tokens": record.to_dict()})

        try:
            await self.cache.set(scope.cache_key, record.to_dict(), self._ttl_seconds(record))
        except Exception as e:  # noqa: BLE001
            logger.warning(f"token cache write failed for {scope.cache_key}: {type(e).__name__}")

    async def delete(self, scope: ScopeKey) -> None:
        try:
            await self.cache.delete(scope.cache_key)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"token cache delete failed for {scope.cache_key}: {type(e).__name__}")
        if scope.credential_id:
            self.repo.update_credential_data(scope.credential_id, {"oauth_tokens": None})

    @staticmethod
    def _ttl_seconds(record: TokenRecord) -> int | None:
        now = now_ms()
        if record.refresh_token:
            if record.refresh_expires_at:
                return max(60, (record.refresh_expires_at - now) // 1000)
            return DEFAULT_REFRESHABLE_TTL_SEC
        if record.expires_at:
            return max(60, (record.expires_at - now) // 1000)
        return None
