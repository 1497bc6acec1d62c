from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

try:
    from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
except Exception:  # noqa: BLE001
    ProxyHeadersMiddleware = None

from .config import (
    ConfigError,
    get_runtime_config,
    get_version,
    load_runtime_config,
    set_runtime_config,
)
from .context import Context, build_context
from .dispatcher import (
    DEFAULT_SCHEDULE_SECONDS,
    clear_queue,
    get_schedule,
    queue_status,
    schedule_recurring,
    unschedule_recurring,
)
from .gateway import Gateway, TriggerRequest
from .registry import find_unit_by_url, set_site_flags
from .security.rate_limit import client_key_from_request
from .security.tokens import TOKEN_ENV, delete_token, generate_token, set_token
from .storage import init_db, list_jobs
from .utils import configure_logging, log_event

app = FastAPI(title="sitecron API")

if ProxyHeadersMiddleware:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

_TRUTHY = {"1", "true", "yes", "on"}


def _logger() -> logging.Logger:
    return configure_logging("sitecron.api")


def _get_conn() -> Iterator[object]:
    conn = init_db()
    try:
        yield conn
    finally:
        conn.close()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("SC_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if not header or header != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _admin_context(conn) -> Context:
    try:
        return build_context(conn, load_runtime_config(conn))
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


class TokenRequest(BaseModel):
    token: str


class ScheduleRequest(BaseModel):
    frequency_seconds: int = DEFAULT_SCHEDULE_SECONDS


class SiteTestRequest(BaseModel):
    url: str


class SiteFlagsRequest(BaseModel):
    public: bool | None = None
    archived: bool | None = None
    deleted: bool | None = None
    spam: bool | None = None


class LoggingRequest(BaseModel):
    detailed: bool


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/trigger")
@app.get("/dio-cron")
def trigger(request: Request, conn=Depends(_get_conn)) -> Response:
    logger = _logger()
    params = request.query_params
    ga = "ga" in params
    try:
        ctx = build_context(conn, load_runtime_config(conn))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        if ga:
            return PlainTextResponse(f"::error::{exc}", status_code=500)
        return JSONResponse({"success": False, "message": str(exc)}, status_code=500)

    remote_addr = request.client.host if request.client else None
    trigger_request = TriggerRequest(
        client_key=client_key_from_request(request.headers, remote_addr),
        token=params.get("token") or None,
        immediate=params.get("immediate", "").lower() in _TRUTHY,
        ga=ga,
    )
    response = Gateway(ctx).handle(trigger_request)
    if response.media_type == "text/plain":
        return PlainTextResponse(response.body, status_code=response.status)
    return JSONResponse(response.body, status_code=response.status)


@app.get("/admin/status", dependencies=[Depends(_require_admin_token)])
def admin_status(request: Request, conn=Depends(_get_conn)) -> dict[str, object]:
    ctx = _admin_context(conn)
    lock = ctx.lock.peek()
    run = ctx.tracker.current()
    remote_addr = request.client.host if request.client else None
    return {
        "version": get_version(),
        "lock": {
            "locked": ctx.lock.is_locked(),
            "holder": asdict(lock) if lock else None,
            "last_run_at": ctx.lock.last_run_at(),
        },
        "token": {
            "configured": ctx.authenticator.is_configured(),
            "source": ctx.token_source,
        },
        "stats": asdict(ctx.stats.read()),
        "today": ctx.stats.today(conn, ctx.config.app.timezone),
        "queue": queue_status(conn),
        "run": asdict(run) if run else None,
        "schedule": get_schedule(conn),
        "detailed_logging": ctx.site_task.detailed_logging,
        "client_key": client_key_from_request(request.headers, remote_addr),
    }


@app.post("/admin/token/generate", dependencies=[Depends(_require_admin_token)])
def admin_token_generate(conn=Depends(_get_conn)) -> dict[str, object]:
    token = generate_token()
    try:
        set_token(conn, token)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"token": token, "overridden_by_env": bool(os.environ.get(TOKEN_ENV))}


@app.put("/admin/token", dependencies=[Depends(_require_admin_token)])
def admin_token_set(payload: TokenRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        set_token(conn, payload.token)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True}


@app.delete("/admin/token", dependencies=[Depends(_require_admin_token)])
def admin_token_delete(conn=Depends(_get_conn)) -> dict[str, object]:
    return {"deleted": delete_token(conn)}


@app.post("/admin/queue/clear", dependencies=[Depends(_require_admin_token)])
def admin_queue_clear(conn=Depends(_get_conn)) -> dict[str, object]:
    return {"canceled": clear_queue(conn)}


@app.post("/admin/schedule", dependencies=[Depends(_require_admin_token)])
def admin_schedule_set(payload: ScheduleRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        schedule_recurring(conn, payload.frequency_seconds)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"schedule": get_schedule(conn)}


@app.delete("/admin/schedule", dependencies=[Depends(_require_admin_token)])
def admin_schedule_unset(conn=Depends(_get_conn)) -> dict[str, object]:
    return {"removed": unschedule_recurring(conn)}


@app.post("/admin/sites/cache/clear", dependencies=[Depends(_require_admin_token)])
def admin_sites_cache_clear(conn=Depends(_get_conn)) -> dict[str, object]:
    _admin_context(conn).registry.invalidate()
    return {"ok": True}


@app.put("/admin/sites/{site_id}/flags", dependencies=[Depends(_require_admin_token)])
def admin_site_flags(
    site_id: int, payload: SiteFlagsRequest, conn=Depends(_get_conn)
) -> dict[str, object]:
    flags = {key: value for key, value in payload.model_dump().items() if value is not None}
    if not flags:
        raise HTTPException(status_code=400, detail="no flags given")
    if not set_site_flags(conn, site_id, **flags):
        raise HTTPException(status_code=404, detail="site not found")
    _admin_context(conn).registry.invalidate()
    return {"ok": True, "site_id": site_id, **flags}


@app.post("/admin/sites/test", dependencies=[Depends(_require_admin_token)])
def admin_site_test(payload: SiteTestRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    unit = find_unit_by_url(conn, payload.url)
    if unit is None:
        raise HTTPException(status_code=404, detail="site not registered")
    ctx = _admin_context(conn)
    outcome = ctx.site_task.trigger(unit.base_url, unit_id=unit.id)
    return asdict(outcome)


@app.put("/admin/logging", dependencies=[Depends(_require_admin_token)])
def admin_logging(payload: LoggingRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
        cfg["logging"]["detailed"] = payload.detailed
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"detailed": payload.detailed}


@app.get("/jobs", dependencies=[Depends(_require_admin_token)])
def jobs(
    limit: int = 20,
    status: str | None = None,
    job_type: str | None = None,
    conn=Depends(_get_conn),
) -> list[dict[str, object]]:
    rows = []
    for job in list_jobs(conn, limit=limit, status=status, job_type=job_type):
        rows.append(
            {
                "id": job.id,
                "job_type": job.job_type,
                "status": job.status,
                "payload": job.payload,
                "requested_at": job.requested_at,
                "started_at": job.started_at or "",
                "finished_at": job.finished_at or "",
                "attempts": job.attempts,
                "error": job.error or "",
                "result": job.result or {},
            }
        )
    return rows
