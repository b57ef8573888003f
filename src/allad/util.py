from __future__ import annotations

import secrets
import time
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def local_today(timezone_name: str) -> date:
    return datetime.now(tz=ZoneInfo(timezone_name)).date()


def today_str(timezone_name: str) -> str:
    return local_today(timezone_name).isoformat()
