from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from .config import ConfigError, load_runtime_config
from .context import Context, build_context
from .dispatcher import DISPATCH_JOB_TYPE, TRIGGER_JOB_TYPE, maybe_enqueue_scheduled_dispatch
from .errors import DispatchError, UnitExecutionError
from .models import Job
from .storage import (
    claim_next_job,
    complete_job,
    fail_job,
    init_db,
    is_job_canceled,
    requeue_job,
)
from .utils import configure_logging, log_event, utc_now_iso_offset

WORKER_JOB_TYPES = [TRIGGER_JOB_TYPE, DISPATCH_JOB_TYPE]


def _setup_logging() -> logging.Logger:
    return configure_logging("sitecron.worker")


def _open_context(logger: logging.Logger) -> Context | None:
    conn = init_db()
    try:
        return build_context(conn, load_runtime_config(conn))
    except ConfigError as exc:
        conn.close()
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def run_once(worker_id: str, allowed_types: list[str] | None = None) -> int:
    logger = _setup_logging()
    ctx = _open_context(logger)
    if ctx is None:
        return 1
    try:
        _tick(ctx, logger)
        job = _claim(ctx, worker_id, allowed_types)
        if not job:
            return 0
        return _process_claimed_job(ctx, job, logger)
    finally:
        ctx.conn.close()


def _tick(ctx: Context, logger: logging.Logger) -> None:
    maybe_enqueue_scheduled_dispatch(ctx.conn)
    purged = ctx.cache.purge_expired()
    if purged:
        log_event(logger, logging.DEBUG, "cache_purged", count=purged)


def _claim(ctx: Context, worker_id: str, allowed_types: list[str] | None) -> Job | None:
    return claim_next_job(
        ctx.conn,
        worker_id,
        allowed_types=allowed_types or WORKER_JOB_TYPES,
        lock_timeout_seconds=ctx.config.jobs.lock_timeout_seconds,
    )


def _process_claimed_job(ctx: Context, job: Job, logger: logging.Logger) -> int:
    conn = ctx.conn
    if is_job_canceled(conn, job.id):
        log_event(logger, logging.INFO, "job_canceled", job_id=job.id)
        return 0

    try:
        result = run_claimed_job(ctx, job, logger)
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
            **_job_context_fields(job),
        )
        return 1

    if result.get("requeued"):
        log_event(
            logger,
            logging.INFO,
            "job_requeued",
            job_id=job.id,
            reason=result.get("reason"),
            attempt=result.get("attempt"),
            next_in=result.get("next_in"),
            **_job_context_fields(job),
        )
        return 0

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, **_job_context_fields(job))
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def run_claimed_job(ctx: Context, job: Job, logger: logging.Logger) -> dict[str, object]:
    log_event(
        logger,
        logging.DEBUG,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        attempts=job.attempts,
    )
    if job.job_type == TRIGGER_JOB_TYPE:
        return _handle_trigger_site(ctx, job, logger)
    if job.job_type == DISPATCH_JOB_TYPE:
        return _handle_dispatch_all(ctx, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def _handle_trigger_site(ctx: Context, job: Job, logger: logging.Logger) -> dict[str, object]:
    payload = job.payload or {}
    site_id = payload.get("site_id")
    site_url = payload.get("site_url")
    if site_id is None or not site_url:
        raise ValueError("trigger_site requires site_id and site_url")
    run_id = payload.get("run_id")
    # Retries already counted toward their run on the first attempt.
    already_tracked = bool(payload.get("tracked"))
    outcome = ctx.site_task.execute(
        int(site_id),
        str(site_url),
        run_id=str(run_id) if run_id else None,
        track=not already_tracked,
    )
    if outcome.ok:
        return {
            "ok": True,
            "response_code": outcome.response_code,
            "execution_time": outcome.execution_time,
        }

    attempt = job.attempts + 1
    jobs_cfg = ctx.config.jobs
    if attempt < jobs_cfg.max_attempts and jobs_cfg.backoff_seconds:
        delay = jobs_cfg.backoff_seconds[min(job.attempts, len(jobs_cfg.backoff_seconds) - 1)]
        next_payload = dict(payload)
        next_payload["tracked"] = True
        next_payload["not_before"] = utc_now_iso_offset(seconds=delay)
        requeue_job(
            ctx.conn,
            job.id,
            next_payload,
            str(next_payload["not_before"]),
            error=outcome.error,
        )
        return {"requeued": True, "reason": outcome.error, "attempt": attempt, "next_in": delay}

    log_event(
        logger,
        logging.WARNING,
        "site_trigger_gave_up",
        site_id=site_id,
        attempts=attempt,
        error=outcome.error,
    )
    raise UnitExecutionError(outcome.error or "Cron request failed", outcome.response_code)


def _handle_dispatch_all(ctx: Context, logger: logging.Logger) -> dict[str, object]:
    cfg = ctx.config.lock
    if not ctx.lock.acquire(cfg.lease_ttl_seconds, cfg.min_interval_seconds):
        log_event(logger, logging.INFO, "scheduled_dispatch_skipped", reason="locked")
        return {"skipped": True, "reason": "locked"}
    try:
        result = ctx.dispatcher.dispatch_all()
    finally:
        ctx.lock.release()
    if result.errors:
        raise DispatchError(result.message, result.errors)
    return result.to_payload()


def _job_context_fields(job: Job) -> dict[str, object]:
    payload = job.payload or {}
    fields: dict[str, object] = {}
    for key in ("site_id", "run_id"):
        if payload.get(key) is not None:
            fields[key] = payload[key]
    return fields


def _process_claimed_job_thread(job: Job) -> int:
    logger = _setup_logging()
    ctx = _open_context(logger)
    if ctx is None:
        return 1
    try:
        return _process_claimed_job(ctx, job, logger)
    finally:
        ctx.conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
    batch_size: int = 5,
) -> int:
    logger = _setup_logging()
    batch_size = max(1, batch_size)
    if concurrency <= 1:
        while True:
            ctx = _open_context(logger)
            if ctx is None:
                time.sleep(sleep_seconds)
                continue
            try:
                _tick(ctx, logger)
                for _ in range(batch_size):
                    job = _claim(ctx, worker_id, allowed_types)
                    if not job:
                        break
                    _process_claimed_job(ctx, job, logger)
            finally:
                ctx.conn.close()
            time.sleep(sleep_seconds)

    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            ctx = _open_context(logger)
            if ctx is not None:
                try:
                    _tick(ctx, logger)
                    claimed = 0
                    while len(futures) < max_workers and claimed < batch_size:
                        job = _claim(ctx, worker_id, allowed_types)
                        if not job:
                            break
                        claimed += 1
                        futures.add(executor.submit(_process_claimed_job_thread, job))
                finally:
                    ctx.conn.close()
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def _parse_only_types(value: str) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitecron-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("SC_WORKER_ONLY_TYPES", ""))
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)

    logger = _setup_logging()
    ctx = _open_context(logger)
    if ctx is None:
        return 1
    worker_cfg = ctx.config.worker
    ctx.conn.close()
    return run_loop(
        args.worker_id,
        args.sleep if args.sleep is not None else worker_cfg.sleep_seconds,
        allowed_types,
        args.concurrency if args.concurrency is not None else worker_cfg.concurrency,
        args.batch_size if args.batch_size is not None else worker_cfg.batch_size,
    )


if __name__ == "__main__":
    raise SystemExit(main())
