import io
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.error import HTTPError

import pytest

from sitecron.cache import DbCache
from sitecron.site_task import SiteTask, _fetch_url, build_cron_url
from sitecron.stats import StatsAggregator
from sitecron.tracker import RunTracker


class _CronHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        status = 500 if self.path.startswith("/broken/") else 200
        self.server.seen.append((self.path, self.headers.get("User-Agent")))
        self.send_response(status)
        self.end_headers()
        self.wfile.write(b"ok")

    def log_message(self, format, *args):
        return


@pytest.fixture
def cron_server():
    server = HTTPServer(("127.0.0.1", 0), _CronHandler)
    server.seen = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _task(conn, **kwargs):
    cache = DbCache(conn)
    tracker = RunTracker(cache, StatsAggregator(cache))
    return SiteTask(tracker, **kwargs), tracker


def test_build_cron_url():
    assert build_cron_url("https://a.example.com") == "https://a.example.com/wp-cron.php?doing_wp_cron"
    assert build_cron_url("https://a.example.com/blog/") == (
        "https://a.example.com/blog/wp-cron.php?doing_wp_cron"
    )


def test_trigger_success_against_http_server(conn, cron_server):
    task, _ = _task(conn, timeout_seconds=5, user_agent="sitecron-test")
    base = f"http://127.0.0.1:{cron_server.server_port}"

    outcome = task.trigger(base, unit_id=7)

    assert outcome.ok is True
    assert outcome.response_code == 200
    assert outcome.error is None
    assert outcome.unit_id == 7
    assert outcome.timeout_used == 5
    assert cron_server.seen == [("/wp-cron.php?doing_wp_cron", "sitecron-test")]


def test_trigger_http_error_is_a_failed_outcome(conn, cron_server):
    task, _ = _task(conn)
    base = f"http://127.0.0.1:{cron_server.server_port}/broken"

    outcome = task.trigger(base, timeout=2)

    assert outcome.ok is False
    assert outcome.response_code == 500
    assert outcome.error == "HTTP 500: Cron request failed"
    assert outcome.timeout_used == 2


def test_http_error_body_is_closed(monkeypatch):
    body = io.BytesIO(b"server error")

    def raise_http_error(request, timeout, context):
        raise HTTPError(request.full_url, 503, "Service Unavailable", {}, body)

    monkeypatch.setattr("sitecron.site_task.urlopen", raise_http_error)

    assert _fetch_url("http://127.0.0.1/wp-cron.php", {}, 1.0, True) == (503, None)
    assert body.closed


def test_trigger_transport_error_is_a_failed_outcome(conn):
    def refuse(url, headers, timeout, verify_tls):
        return None, "Connection refused"

    task, _ = _task(conn, fetch=refuse)
    outcome = task.trigger("https://down.example.com")

    assert outcome.ok is False
    assert outcome.response_code is None
    assert outcome.error == "Connection refused"


def test_redirect_status_counts_as_failure(conn):
    task, _ = _task(conn, fetch=lambda url, headers, timeout, verify_tls: (302, None))
    assert task.trigger("https://moved.example.com").ok is False


def test_execute_counts_failures_toward_run(conn, fetch):
    fetch.failing = {"bad"}
    task, tracker = _task(conn, fetch=fetch)
    tracker.start("run-1", expected=2)

    assert task.execute(1, "https://good.example.com", run_id="run-1").ok
    assert task.execute(2, "https://bad.example.com", run_id="run-1").ok is False

    assert tracker.current() is None
    assert tracker.stats.read().units_processed_last_run == 2


def test_execute_without_tracking_leaves_run_alone(conn, fetch):
    task, tracker = _task(conn, fetch=fetch)
    tracker.start("run-1", expected=2)

    task.execute(1, "https://good.example.com", run_id="run-1", track=False)

    assert tracker.current().processed == 0
