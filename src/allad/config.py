from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os

from dotenv import load_dotenv


def _env(name: str) -> str | None:
    v = (os.getenv(name) or "").strip()
    return v or None


# env var prefix per platform for OAuth client credentials
_CLIENT_ENV = {
    "google": ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"),
    "meta": ("META_CLIENT_ID", "META_CLIENT_SECRET"),
    "kakao": ("KAKAO_CLIENT_ID", "KAKAO_CLIENT_SECRET"),
    "tiktok": ("TIKTOK_APP_ID", "TIKTOK_SECRET"),
    "amazon": ("AMAZON_CLIENT_ID", "AMAZON_CLIENT_SECRET"),
}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    web_host: str
    web_port: int
    redis_url: str | None = None
    site_url: str = "http://localhost:3000"
    cron_secret: str | None = None
    http_timeout_sec: float = 30.0
    worker_interval_sec: int = 3600
    full_sync_hour: int = 3
    google_developer_token: str | None = None
    oauth_clients: dict[str, tuple[str | None, str | None]] = field(default_factory=dict)

    def oauth_client(self, platform: str) -> tuple[str | None, str | None]:
        return self.oauth_clients.get(str(platform), (None, None))

    def redirect_uri(self, platform: str) -> str:
        return f"{self.site_url.rstrip('/')}/api/auth/callback/{platform}-ads"

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ALLAD_DB_PATH", "./data/allad.sqlite3"))
        timezone = os.getenv("ALLAD_TIMEZONE", "Asia/Seoul").strip() or "Asia/Seoul"
        web_host = os.getenv("ALLAD_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("ALLAD_WEB_PORT", "8010"))

        clients = {p: (_env(id_key), _env(secret_key)) for p, (id_key, secret_key) in _CLIENT_ENV.items()}

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            redis_url=_env("REDIS_URL"),
            site_url=_env("SITE_URL") or "http://localhost:3000",
            cron_secret=_env("CRON_SECRET"),
            http_timeout_sec=float(os.getenv("ALLAD_HTTP_TIMEOUT_SEC", "30")),
            worker_interval_sec=int(os.getenv("ALLAD_WORKER_INTERVAL_SEC", "3600")),
            full_sync_hour=int(os.getenv("ALLAD_FULL_SYNC_HOUR", "3")),
            google_developer_token=_env("GOOGLE_DEVELOPER_TOKEN"),
            oauth_clients=clients,
        )
