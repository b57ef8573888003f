from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class AllAdError(Exception):
    """Base class for every typed failure raised inside allad."""


class AuthConfigError(AllAdError):
    """Required client id/secret/developer token is missing."""

    def __init__(self, platform: str, missing: list[str] | str):
        self.platform = str(platform)
        self.missing = [missing] if isinstance(missing, str) else list(missing)
        super().__init__(f"{self.platform}: missing credential field(s): {', '.join(self.missing)}")


class TokenExchangeError(AllAdError):
    def __init__(self, platform: str, body: str, status_code: int | None = None):
        self.platform = str(platform)
        self.body = body
        self.status_code = status_code
        super().__init__(f"Token exchange failed: {body}")


class TokenRefreshError(AllAdError):
    def __init__(self, platform: str, body: str, status_code: int | None = None):
        self.platform = str(platform)
        self.body = body
        self.status_code = status_code
        super().__init__(f"Token refresh failed: {body}")


class CredentialNotFoundError(AllAdError):
    def __init__(self, team_id: str, platform: str):
        self.team_id = team_id
        self.platform = str(platform)
        super().__init__(f"No active {self.platform} credential for team {team_id}")


class ReauthRequiredError(AllAdError):
    """Stored token is unusable and could not be refreshed; the user must reconnect."""

    def __init__(self, platform: str):
        self.platform = str(platform)
        super().__init__(f"{self.platform} needs reconnection")


class UnknownPlatformError(AllAdError):
    def __init__(self, platform: str):
        self.platform = str(platform)
        super().__init__(f"Unknown platform: {self.platform}")


class UnknownJobError(AllAdError):
    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Unknown job name: {job_name}")


# Provider-specific error codes, see classify() below.
_META_AUTH_CODES = {190, 102}
_META_RATE_LIMIT_CODES = {17, 32, 613}
_TIKTOK_AUTH_CODES = {40100, 40101, 40102}


class PlatformApiError(AllAdError):
    """Non-2xx or malformed response from a platform API.

    `payload` keeps the raw provider error body for diagnostics.
    """

    def __init__(
        self,
        platform: str,
        message: str,
        *,
        status_code: int | None = None,
        code: int | str | None = None,
        payload: Any = None,
    ):
        self.platform = str(platform)
        self.status_code = status_code
        self.code = code
        self.payload = payload
        self.kind = classify(self.platform, status_code, code)
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in {"rate_limit", "server"}

    @property
    def needs_reauth(self) -> bool:
        return self.kind == "auth"


def classify(platform: str, status_code: int | None, code: int | str | None) -> str:
    try:
        code_i = int(code) if code is not None else None
    except (TypeError, ValueError):
        code_i = None

    if code_i is not None:
        if platform == "meta":
            if code_i in _META_AUTH_CODES:
                return "auth"
            if code_i in _META_RATE_LIMIT_CODES:
                return "rate_limit"
        if platform == "tiktok" and code_i in _TIKTOK_AUTH_CODES:
            return "auth"

    if status_code is None:
        return "unknown"
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server"
    if status_code == 404:
        return "not_found"
    if status_code == 400:
        return "invalid_request"
    return "unknown"


class PartialBatchFailure(AllAdError):
    def __init__(self, result: "BatchResult"):
        self.result = result
        super().__init__(f"{result.failed} of {result.total} batch item(s) failed")


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def record(self, item_id: str, ok: bool) -> None:
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.failed_ids.append(item_id)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialBatchFailure(self)

    def to_dict(self) -> dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed, "failed_ids": list(self.failed_ids)}
