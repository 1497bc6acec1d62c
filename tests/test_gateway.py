from dataclasses import replace

from sitecron.dispatcher import Dispatcher
from sitecron.errors import DirectoryError
from sitecron.gateway import AUTH_MESSAGE, Gateway, GatewayState, TriggerRequest
from sitecron.registry import upsert_site
from sitecron.security.tokens import set_token
from sitecron.storage import list_jobs

TOKEN = "0123456789abcdef0123456789abcdef"


class BrokenRegistry:
    def get_units(self):
        raise DirectoryError("Site directory unavailable: connection lost")


def _ready_context(conn, make_context, clock=None, sites=2):
    set_token(conn, TOKEN)
    for index in range(1, sites + 1):
        upsert_site(conn, f"https://site{index}.example.com")
    return make_context(clock=clock)


def test_missing_token_is_rejected_before_lock(conn, make_context):
    ctx = _ready_context(conn, make_context)
    gateway = Gateway(ctx)

    response = gateway.handle(TriggerRequest(client_key="203.0.113.1"))

    assert response.status == 401
    assert response.body == {"success": False, "message": AUTH_MESSAGE}
    assert gateway.states == [
        GatewayState.RECEIVED,
        GatewayState.RATE_CHECKED,
        GatewayState.RESPONDED,
    ]
    assert ctx.lock.peek() is None
    assert ctx.lock.last_run_at() is None
    assert list_jobs(conn) == []


def test_unconfigured_endpoint_is_closed(conn, make_context):
    ctx = make_context()
    response = Gateway(ctx).handle(TriggerRequest(client_key="c", token="whatever-token-value"))
    assert response.status == 401


def test_successful_dispatch_walks_every_state(conn, make_context):
    ctx = _ready_context(conn, make_context)
    gateway = Gateway(ctx)

    response = gateway.handle(TriggerRequest(client_key="c", token=TOKEN))

    assert response.status == 200
    assert response.body["success"] is True
    assert response.body["count"] == 2
    assert gateway.states == [
        GatewayState.RECEIVED,
        GatewayState.RATE_CHECKED,
        GatewayState.AUTHENTICATED,
        GatewayState.LOCK_ACQUIRED,
        GatewayState.DISPATCHED,
        GatewayState.LOCK_RELEASED,
        GatewayState.RESPONDED,
    ]
    assert ctx.lock.is_locked() is False


def test_second_trigger_within_min_interval_conflicts(conn, make_context, clock):
    ctx = _ready_context(conn, make_context, clock=clock)
    first = Gateway(ctx).handle(TriggerRequest(client_key="c", token=TOKEN))
    assert first.status == 200
    run_before = ctx.tracker.current()

    clock.advance(5)
    second = Gateway(ctx).handle(TriggerRequest(client_key="c", token=TOKEN))

    assert second.status == 409
    assert second.body["message"] == "Cron job already running"
    assert ctx.tracker.current() == run_before
    assert len(list_jobs(conn)) == 2


def test_rate_limit_short_circuits(conn, make_context, clock):
    ctx = _ready_context(conn, make_context, clock=clock)
    statuses = [
        Gateway(ctx).handle(TriggerRequest(client_key="c", token="wrong-token-but-long")).status
        for _ in range(6)
    ]
    assert statuses == [401] * 5 + [429]


def test_directory_error_returns_503_and_releases_lock(conn, make_context):
    ctx = _ready_context(conn, make_context)
    ctx = replace(ctx, dispatcher=Dispatcher(conn, BrokenRegistry(), ctx.tracker))
    gateway = Gateway(ctx)

    response = gateway.handle(TriggerRequest(client_key="c", token=TOKEN))

    assert response.status == 503
    assert "connection lost" in response.body["message"]
    assert gateway.states[-2:] == [GatewayState.LOCK_RELEASED, GatewayState.RESPONDED]
    assert ctx.lock.is_locked() is False
    assert ctx.tracker.current() is None


def test_ci_output_is_single_line(conn, make_context):
    ctx = _ready_context(conn, make_context)

    def failing_submit(job_type, payload):
        raise RuntimeError("queue down")

    ctx = replace(ctx, dispatcher=Dispatcher(conn, ctx.registry, ctx.tracker, submit=failing_submit))
    response = Gateway(ctx).handle(TriggerRequest(client_key="c", token=TOKEN, ga=True))

    assert response.status == 200
    assert response.media_type == "text/plain"
    assert response.body == (
        "::error::Error queuing https://site1.example.com: queue down; "
        "Error queuing https://site2.example.com: queue down"
    )


def test_immediate_mode_runs_inline(conn, make_context, fetch):
    set_token(conn, TOKEN)
    upsert_site(conn, "https://site1.example.com")
    ctx = make_context(fetch=fetch)
    gateway = Gateway(ctx)

    response = gateway.handle(TriggerRequest(client_key="c", token=TOKEN, immediate=True))

    assert response.status == 200
    assert response.body["message"] == "Processed 1 sites successfully"
    assert GatewayState.EXECUTED in gateway.states
    assert list_jobs(conn) == []
