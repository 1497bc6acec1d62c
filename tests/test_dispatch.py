import logging

from sitecron.dispatcher import (
    NO_SITES_MESSAGE,
    TRIGGER_JOB_TYPE,
    Dispatcher,
    clear_queue,
    queue_status,
)
from sitecron.registry import upsert_site
from sitecron.storage import claim_next_job, list_jobs
from sitecron.worker import _process_claimed_job


def _seed_sites(conn, count, failing=()):
    for index in range(1, count + 1):
        name = "bad" if index in failing else "site"
        upsert_site(conn, f"https://{name}{index}.example.com")


def test_two_hundred_units_finalize_once(conn, fetch, make_context):
    failing = set(range(1, 201, 20))
    _seed_sites(conn, 200, failing=failing)
    fetch.failing = {"://bad"}
    ctx = make_context(fetch=fetch)

    result = ctx.dispatcher.dispatch_all()

    assert result.success is True
    assert result.count == 200
    assert result.message == "Queued 200 sites for cron processing"
    run = ctx.tracker.current()
    assert run.expected == 200
    assert run.processed == 0

    logger = logging.getLogger("sitecron.test")
    processed = 0
    while True:
        job = claim_next_job(ctx.conn, "worker-1", allowed_types=[TRIGGER_JOB_TYPE])
        if job is None:
            break
        _process_claimed_job(ctx, job, logger)
        processed += 1

    assert processed == 200
    assert len(fetch.calls) == 200
    assert ctx.tracker.current() is None
    stats = ctx.stats.read()
    assert stats.total_runs == 1
    assert stats.units_processed_last_run == 200
    assert stats.total_units_processed == 200

    status = queue_status(ctx.conn)
    assert status["pending"] == len(failing)
    assert status["failed"] == 0
    assert len(list_jobs(ctx.conn, limit=500, status="succeeded")) == 190


def test_empty_directory_creates_no_run(conn, make_context):
    ctx = make_context()

    result = ctx.dispatcher.dispatch_all()

    assert result.success is False
    assert result.count == 0
    assert result.message == NO_SITES_MESSAGE
    assert ctx.tracker.current() is None
    assert list_jobs(conn) == []


def test_partial_submission_failure_is_reported(conn, make_context):
    _seed_sites(conn, 3)
    ctx = make_context()

    def flaky_submit(job_type, payload):
        if payload["site_id"] == 2:
            raise RuntimeError("queue unavailable")
        return f"job-{payload['site_id']}"

    dispatcher = Dispatcher(conn, ctx.registry, ctx.tracker, submit=flaky_submit)
    result = dispatcher.dispatch_all()

    assert result.success is False
    assert result.count == 2
    assert result.errors == ["Error queuing https://site2.example.com: queue unavailable"]
    assert ctx.tracker.current().expected == 3


def test_jobs_carry_run_id(conn, make_context):
    _seed_sites(conn, 2)
    ctx = make_context()
    ctx.dispatcher.dispatch_all()

    run_id = ctx.tracker.current().run_id
    payloads = [job.payload for job in list_jobs(conn, job_type=TRIGGER_JOB_TYPE)]
    assert {payload["run_id"] for payload in payloads} == {run_id}
    assert sorted(payload["site_id"] for payload in payloads) == [1, 2]


def test_immediate_runner_records_stats(conn, fetch, make_context):
    _seed_sites(conn, 3, failing={3})
    fetch.failing = {"://bad"}
    ctx = make_context(fetch=fetch)

    result = ctx.immediate_runner.run_all()

    assert result.success is False
    assert result.count == 2
    assert result.errors == ["Error for https://bad3.example.com: HTTP 500: Cron request failed"]
    assert ctx.stats.read().units_processed_last_run == 3
    assert ctx.tracker.current() is None
    assert list_jobs(conn) == []


def test_immediate_runner_success_message(conn, fetch, make_context):
    _seed_sites(conn, 2)
    ctx = make_context(fetch=fetch)
    result = ctx.immediate_runner.run_all()
    assert result.success is True
    assert result.message == "Processed 2 sites successfully"
    assert all(call.endswith("wp-cron.php?doing_wp_cron") for call in fetch.calls)


def test_immediate_runner_uses_short_timeout(conn, make_context):
    _seed_sites(conn, 1)
    seen = []

    def record(url, headers, timeout, verify_tls):
        seen.append(timeout)
        return 200, None

    ctx = make_context(fetch=record)
    ctx.immediate_runner.run_all()
    assert seen == [5.0]


def test_clear_queue_cancels_pending_triggers(conn, make_context):
    _seed_sites(conn, 4)
    ctx = make_context()
    ctx.dispatcher.dispatch_all()

    assert clear_queue(conn) == 4
    assert queue_status(conn)["pending"] == 0
    assert claim_next_job(conn, "worker-1") is None
