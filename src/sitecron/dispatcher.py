from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from .config import ConfigError
from .models import DispatchResult, SubmissionResult, Unit
from .storage import (
    cancel_jobs_by_type,
    count_jobs_by_status,
    delete_setting,
    enqueue_job,
    get_setting,
    has_pending_job,
    job_finished_at,
    list_jobs,
    set_setting,
)
from .utils import log_event, parse_iso, utc_now_iso

TRIGGER_JOB_TYPE = "trigger_site"
DISPATCH_JOB_TYPE = "dispatch_all"

NO_SITES_MESSAGE = "No public sites found in the network"

SCHEDULE_FREQUENCY_KEY = "schedule.frequency_seconds"
SCHEDULE_LAST_KEY = "schedule.last_enqueued_at"
DEFAULT_SCHEDULE_SECONDS = 3600

Submitter = Callable[[str, dict[str, object]], str]

LOGGER = logging.getLogger("sitecron.dispatcher")


def new_run_id(now: float) -> str:
    return f"run_{int(now)}_{uuid.uuid4().hex}"


class Dispatcher:
    """Fans one ``trigger_site`` job per eligible site into the job queue."""

    def __init__(
        self,
        conn: Any,
        registry: Any,
        tracker: Any,
        clock: Callable[[], float] = time.time,
        submit: Submitter | None = None,
    ) -> None:
        self.conn = conn
        self.registry = registry
        self.tracker = tracker
        self.clock = clock
        self.submit = submit or self._enqueue

    def dispatch_all(self) -> DispatchResult:
        units = self.registry.get_units()
        if not units:
            log_event(LOGGER, logging.WARNING, "dispatch_no_sites")
            return DispatchResult(success=False, message=NO_SITES_MESSAGE, count=0)

        run_id = new_run_id(self.clock())
        self.tracker.start(run_id, expected=len(units))

        started = time.monotonic()
        results = [self._submit_unit(unit, run_id) for unit in units]
        elapsed = round(time.monotonic() - started, 2)

        urls = {unit.id: unit.base_url for unit in units}
        errors = [
            f"Error queuing {urls[result.unit_id]}: {result.error}"
            for result in results
            if not result.ok
        ]
        count = sum(1 for result in results if result.ok)
        log_event(
            LOGGER,
            logging.INFO,
            "dispatch_completed",
            run_id=run_id,
            queued=count,
            failed=len(errors),
            elapsed=elapsed,
        )
        if errors:
            return DispatchResult(
                success=False,
                message="\n".join(errors),
                count=count,
                execution_time=elapsed,
                errors=errors,
            )
        return DispatchResult(
            success=True,
            message=f"Queued {count} sites for cron processing",
            count=count,
            execution_time=elapsed,
        )

    def _submit_unit(self, unit: Unit, run_id: str) -> SubmissionResult:
        payload = {"site_id": unit.id, "site_url": unit.base_url, "run_id": run_id}
        try:
            job_id = self.submit(TRIGGER_JOB_TYPE, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                logging.ERROR,
                "dispatch_submit_failed",
                site_id=unit.id,
                error=str(exc),
            )
            return SubmissionResult(unit_id=unit.id, ok=False, error=str(exc))
        return SubmissionResult(unit_id=unit.id, ok=True, job_id=job_id)

    def _enqueue(self, job_type: str, payload: dict[str, object]) -> str:
        return enqueue_job(self.conn, job_type, payload)


class ImmediateRunner:
    """Triggers every eligible site inline, without the job queue.

    Run tracking is skipped. The run is still recorded in the network stats
    with the number of sites attempted.
    """

    def __init__(self, registry: Any, site_task: Any, stats: Any, timeout: float = 5.0) -> None:
        self.registry = registry
        self.site_task = site_task
        self.stats = stats
        self.timeout = timeout

    def run_all(self) -> DispatchResult:
        units = self.registry.get_units()
        if not units:
            return DispatchResult(success=False, message=NO_SITES_MESSAGE, count=0)

        started = time.monotonic()
        errors: list[str] = []
        count = 0
        for unit in units:
            outcome = self.site_task.trigger(unit.base_url, timeout=self.timeout, unit_id=unit.id)
            if outcome.ok:
                count += 1
            else:
                errors.append(f"Error for {unit.base_url}: {outcome.error}")
        elapsed = round(time.monotonic() - started, 2)
        self.stats.record_run(len(units))

        if errors:
            return DispatchResult(
                success=False,
                message="\n".join(errors),
                count=count,
                execution_time=elapsed,
                errors=errors,
            )
        return DispatchResult(
            success=True,
            message=f"Processed {count} sites successfully",
            count=count,
            execution_time=elapsed,
        )


def queue_status(conn: Any, failed_limit: int = 10) -> dict[str, object]:
    counts = count_jobs_by_status(conn, TRIGGER_JOB_TYPE)
    failed_jobs = []
    for job in list_jobs(conn, limit=failed_limit, status="failed", job_type=TRIGGER_JOB_TYPE):
        finished = job_finished_at(job)
        failed_jobs.append(
            {
                "id": job.id,
                "site_id": job.payload.get("site_id"),
                "site_url": job.payload.get("site_url"),
                "error": job.error,
                "attempts": job.attempts,
                "failed_at": finished.isoformat() if finished else None,
            }
        )
    return {
        "pending": counts.get("queued", 0),
        "in_progress": counts.get("running", 0),
        "failed": counts.get("failed", 0),
        "failed_jobs": failed_jobs,
    }


def clear_queue(conn: Any) -> int:
    canceled = cancel_jobs_by_type(conn, TRIGGER_JOB_TYPE, status="queued", reason="queue_cleared")
    log_event(LOGGER, logging.INFO, "queue_cleared", canceled=canceled)
    return canceled


def schedule_recurring(conn: Any, frequency_seconds: int = DEFAULT_SCHEDULE_SECONDS) -> None:
    if not isinstance(frequency_seconds, int) or frequency_seconds < 60:
        raise ConfigError("Schedule frequency must be an integer of at least 60 seconds")
    set_setting(conn, SCHEDULE_FREQUENCY_KEY, frequency_seconds)
    log_event(LOGGER, logging.INFO, "schedule_set", frequency=frequency_seconds)


def unschedule_recurring(conn: Any) -> bool:
    removed = delete_setting(conn, SCHEDULE_FREQUENCY_KEY)
    delete_setting(conn, SCHEDULE_LAST_KEY)
    cancel_jobs_by_type(conn, DISPATCH_JOB_TYPE, status="queued", reason="unscheduled")
    log_event(LOGGER, logging.INFO, "schedule_unset", removed=removed)
    return removed


def get_schedule(conn: Any) -> dict[str, object] | None:
    frequency = get_setting(conn, SCHEDULE_FREQUENCY_KEY, None)
    if not isinstance(frequency, int) or frequency <= 0:
        return None
    return {
        "frequency_seconds": frequency,
        "last_enqueued_at": get_setting(conn, SCHEDULE_LAST_KEY, None),
    }


def maybe_enqueue_scheduled_dispatch(conn: Any, now_iso: str | None = None) -> str | None:
    schedule = get_schedule(conn)
    if schedule is None:
        return None
    if has_pending_job(conn, DISPATCH_JOB_TYPE):
        return None
    now_iso = now_iso or utc_now_iso()
    last = schedule.get("last_enqueued_at")
    if isinstance(last, str):
        elapsed = (parse_iso(now_iso) - parse_iso(last)).total_seconds()
        if elapsed < int(schedule["frequency_seconds"]):
            return None
    job_id = enqueue_job(conn, DISPATCH_JOB_TYPE, {"scheduled": True})
    set_setting(conn, SCHEDULE_LAST_KEY, now_iso)
    log_event(LOGGER, logging.INFO, "scheduled_dispatch_enqueued", job_id=job_id)
    return job_id
