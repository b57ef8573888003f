from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from allad.config import Settings
from allad.db import AdsDB
from allad.scheduler import trigger_scheduled_job
from allad.sync import SyncOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


def _jobs_for_tick(settings: Settings, last_full_day: str | None) -> tuple[list[str], str | None]:
    now_local = datetime.now(tz=ZoneInfo(settings.timezone))
    today = now_local.date().isoformat()
    jobs = ["refresh-oauth-tokens"]
    if now_local.hour >= settings.full_sync_hour and last_full_day != today:
        jobs.append("google-ads-sync-full-daily")
        return jobs, today
    jobs.append("google-ads-sync-hourly")
    return jobs, last_full_day


async def _tick(orchestrator: SyncOrchestrator, jobs: list[str]) -> None:
    for name in jobs:
        try:
            out = await trigger_scheduled_job(orchestrator, name)
        except Exception as e:  # noqa: BLE001
            logger.error(f"[worker] job {name} failed: {type(e).__name__}: {e}")
            continue
        logger.info(f"[worker] job {name} done: processed={out.get('processed')}")


def run_tick(settings: Settings) -> None:
    AdsDB(settings.db_path).init()
    orchestrator = build_orchestrator(settings)
    jobs, _ = _jobs_for_tick(settings, None)
    asyncio.run(_tick(orchestrator, jobs))


async def _run_forever(settings: Settings) -> None:
    AdsDB(settings.db_path).init()
    orchestrator = build_orchestrator(settings)
    # The full sync runs once per local day, at the first tick past full_sync_hour.
    last_full_day = orchestrator.repo.get_meta("worker:last_full_sync_day")
    while True:
        jobs, day = _jobs_for_tick(settings, last_full_day)
        try:
            await _tick(orchestrator, jobs)
        except Exception as e:  # noqa: BLE001
            logger.error(f"[worker] tick failed: {type(e).__name__}: {e}")
        if day and day != last_full_day:
            orchestrator.repo.set_meta("worker:last_full_sync_day", day)
            last_full_day = day
        await asyncio.sleep(settings.worker_interval_sec)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
