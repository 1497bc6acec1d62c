from __future__ import annotations

import logging
import time
from dataclasses import asdict, fields
from datetime import datetime, timezone
from typing import Any, Callable

from .config import load_timezone
from .models import NetworkStats
from .storage import count_jobs_finished_since
from .utils import log_event

STATS_KEY = "network_stats"
STATS_TTL_SECONDS = 86400
TRIGGER_JOB_TYPE = "trigger_site"

LOGGER = logging.getLogger("sitecron.stats")


class StatsAggregator:
    def __init__(self, cache: Any, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self.clock = clock

    def read(self) -> NetworkStats:
        return _stats_from_dict(self.cache.get(STATS_KEY))

    def record_run(self, units_processed: int) -> NetworkStats:
        now = self.clock()

        def fold(stored: dict[str, Any] | None) -> dict[str, Any]:
            current = _stats_from_dict(stored)
            return asdict(
                NetworkStats(
                    total_runs=current.total_runs + 1,
                    last_run_at=now,
                    total_units_processed=current.total_units_processed + int(units_processed),
                    units_processed_last_run=int(units_processed),
                )
            )

        updated = _stats_from_dict(self.cache.update(STATS_KEY, fold, STATS_TTL_SECONDS))
        log_event(
            LOGGER,
            logging.INFO,
            "run_recorded",
            units=units_processed,
            total_runs=updated.total_runs,
        )
        return updated

    def reset(self) -> None:
        self.cache.delete(STATS_KEY)

    def today(self, conn: Any, tz_name: str = "UTC") -> dict[str, object]:
        since = local_midnight_utc(self.clock(), tz_name).isoformat()
        counts = count_jobs_finished_since(conn, TRIGGER_JOB_TYPE, since)
        completed = counts.get("succeeded", 0)
        failed = counts.get("failed", 0)
        total = completed + failed
        return {
            "completed_today": completed,
            "failed_today": failed,
            "total_today": total,
            "success_rate": round(completed / total * 100, 1) if total else 0.0,
        }


def _stats_from_dict(stored: Any) -> NetworkStats:
    if not isinstance(stored, dict):
        return NetworkStats()
    known = {field.name for field in fields(NetworkStats)}
    merged = asdict(NetworkStats())
    merged.update({key: value for key, value in stored.items() if key in known})
    return NetworkStats(**merged)


def local_midnight_utc(now: float, tz_name: str) -> datetime:
    tz = load_timezone(tz_name)
    local_now = datetime.fromtimestamp(now, tz=tz)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)
