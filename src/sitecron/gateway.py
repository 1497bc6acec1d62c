from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import (
    AuthenticationError,
    ConcurrencyError,
    ConfigurationError,
    DirectoryError,
    RateLimitError,
)
from .models import DispatchResult
from .utils import format_duration, log_event

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
AUTH_MESSAGE = "Authentication required. Configure the endpoint token."
LOCKED_MESSAGE = "Cron job already running"

LOGGER = logging.getLogger("sitecron.gateway")


class GatewayState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    AUTHENTICATED = "authenticated"
    LOCK_ACQUIRED = "lock_acquired"
    DISPATCHED = "dispatched"
    EXECUTED = "executed"
    LOCK_RELEASED = "lock_released"
    RESPONDED = "responded"


@dataclass(frozen=True)
class TriggerRequest:
    client_key: str
    token: str | None = None
    immediate: bool = False
    ga: bool = False


@dataclass(frozen=True)
class GatewayResponse:
    status: int
    body: Any
    media_type: str = "application/json"


class Gateway:
    """Runs one trigger request through rate limit, auth, lock and dispatch.

    Security failures short-circuit before the lock is touched. Once the
    lock is held it is always released, whatever the dispatch does.
    """

    def __init__(self, ctx: Any) -> None:
        self.ctx = ctx
        self.states: list[GatewayState] = []

    def handle(self, request: TriggerRequest) -> GatewayResponse:
        self.states = []
        self._advance(GatewayState.RECEIVED)
        try:
            self._check_rate(request)
            self._advance(GatewayState.RATE_CHECKED)
            self._authenticate(request)
            self._advance(GatewayState.AUTHENTICATED)
            self._acquire_lock()
            self._advance(GatewayState.LOCK_ACQUIRED)
        except RateLimitError as exc:
            return self._error(429, str(exc), request.ga)
        except (AuthenticationError, ConfigurationError):
            return self._error(401, AUTH_MESSAGE, request.ga)
        except ConcurrencyError as exc:
            return self._error(409, str(exc), request.ga)

        failure: tuple[int, str] | None = None
        try:
            result = self._run(request)
        except DirectoryError as exc:
            log_event(LOGGER, logging.ERROR, "dispatch_directory_error", error=str(exc))
            failure = (503, str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("dispatch_unexpected_error")
            failure = (500, f"Cron dispatch failed: {exc}")
        finally:
            self.ctx.lock.release()
            self._advance(GatewayState.LOCK_RELEASED)

        if failure is not None:
            return self._error(failure[0], failure[1], request.ga)
        return self._respond(result, request.ga)

    def _check_rate(self, request: TriggerRequest) -> None:
        cfg = self.ctx.config.rate_limit
        if not self.ctx.rate_limiter.admit(
            request.client_key, cfg.max_requests, cfg.window_seconds
        ):
            raise RateLimitError(RATE_LIMIT_MESSAGE)

    def _authenticate(self, request: TriggerRequest) -> None:
        authenticator = self.ctx.authenticator
        if not authenticator.is_configured():
            log_event(
                LOGGER,
                logging.WARNING,
                "trigger_auth_unconfigured",
                client=request.client_key,
            )
            raise ConfigurationError("No endpoint token configured")
        if not authenticator.verify(request.token):
            log_event(
                LOGGER,
                logging.WARNING,
                "trigger_auth_failed",
                client=request.client_key,
                token_present=bool(request.token),
            )
            raise AuthenticationError(AUTH_MESSAGE)

    def _acquire_lock(self) -> None:
        cfg = self.ctx.config.lock
        if not self.ctx.lock.acquire(cfg.lease_ttl_seconds, cfg.min_interval_seconds):
            raise ConcurrencyError(LOCKED_MESSAGE)

    def _run(self, request: TriggerRequest) -> DispatchResult:
        if request.immediate:
            result = self.ctx.immediate_runner.run_all()
            self._advance(GatewayState.EXECUTED)
        else:
            result = self.ctx.dispatcher.dispatch_all()
            self._advance(GatewayState.DISPATCHED)
        return result

    def _respond(self, result: DispatchResult, ga: bool) -> GatewayResponse:
        self._advance(GatewayState.RESPONDED)
        if ga:
            if result.success:
                text = (
                    f"::notice::Queued wp-cron for {result.count} sites "
                    f"(execution time: {format_duration(result.execution_time)}s)"
                )
            else:
                text = f"::error::{_single_line(result.message)}"
            return GatewayResponse(200, text, "text/plain")
        return GatewayResponse(200, result.to_payload())

    def _error(self, status: int, message: str, ga: bool) -> GatewayResponse:
        self._advance(GatewayState.RESPONDED)
        log_event(LOGGER, logging.INFO, "trigger_rejected", status=status, states=self._trail())
        if ga:
            return GatewayResponse(status, f"::error::{_single_line(message)}", "text/plain")
        return GatewayResponse(status, {"success": False, "message": message})

    def _advance(self, state: GatewayState) -> None:
        self.states.append(state)
        LOGGER.debug("gateway_state state=%s", state.value)

    def _trail(self) -> str:
        return ">".join(state.value for state in self.states)


def _single_line(message: str) -> str:
    return "; ".join(line.strip() for line in message.splitlines() if line.strip())
