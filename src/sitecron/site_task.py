from __future__ import annotations

import logging
import ssl
import time
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .models import TaskOutcome
from .utils import log_event

CRON_PATH = "wp-cron.php?doing_wp_cron"

Fetcher = Callable[[str, dict[str, str], float, bool], tuple[int | None, str | None]]

LOGGER = logging.getLogger("sitecron.site_task")


def build_cron_url(unit_url: str) -> str:
    base = unit_url.strip()
    if not base.endswith("/"):
        base += "/"
    return base + CRON_PATH


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: float,
    verify_tls: bool,
) -> tuple[int | None, str | None]:
    context = None
    if url.lower().startswith("https://") and not verify_tls:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    try:
        request = Request(url, headers=headers, method="GET")
        with urlopen(request, timeout=timeout, context=context) as response:
            return response.getcode(), None
    except HTTPError as exc:
        exc.close()
        return exc.code, None
    except URLError as exc:
        return None, str(exc.reason)
    except Exception as exc:  # noqa: BLE001
        return None, str(exc)


class SiteTask:
    """Triggers one site's scheduled-task runner and reports the outcome.

    Outcomes are returned as values. A failed trigger never raises here;
    the worker decides whether to retry.
    """

    def __init__(
        self,
        tracker: Any,
        timeout_seconds: float = 15.0,
        verify_tls: bool = False,
        user_agent: str = "sitecron",
        detailed_logging: bool = False,
        fetch: Fetcher | None = None,
    ) -> None:
        self.tracker = tracker
        self.timeout_seconds = timeout_seconds
        self.verify_tls = verify_tls
        self.user_agent = user_agent
        self.detailed_logging = detailed_logging
        self.fetch = fetch or _fetch_url

    def execute(
        self,
        unit_id: int,
        unit_url: str,
        run_id: str | None = None,
        track: bool = True,
    ) -> TaskOutcome:
        outcome = self.trigger(unit_url, unit_id=unit_id)
        if track:
            self.tracker.increment(run_id)
            self.tracker.maybe_finalize()
        return outcome

    def trigger(
        self,
        unit_url: str,
        timeout: float | None = None,
        unit_id: int | None = None,
    ) -> TaskOutcome:
        url = build_cron_url(unit_url)
        timeout_used = float(timeout if timeout is not None else self.timeout_seconds)
        started = time.monotonic()
        status, error = self.fetch(
            url, {"User-Agent": self.user_agent}, timeout_used, self.verify_tls
        )
        elapsed = round(time.monotonic() - started, 2)

        if error is not None:
            outcome = TaskOutcome(unit_id, url, False, None, error, elapsed, timeout_used)
        elif status is not None and 200 <= status < 300:
            outcome = TaskOutcome(unit_id, url, True, status, None, elapsed, timeout_used)
        else:
            outcome = TaskOutcome(
                unit_id,
                url,
                False,
                status,
                f"HTTP {status}: Cron request failed",
                elapsed,
                timeout_used,
            )

        if self.detailed_logging:
            log_event(
                LOGGER,
                logging.INFO,
                "site_trigger",
                site_id=unit_id,
                url=url,
                ok=outcome.ok,
                code=outcome.response_code,
                error=outcome.error,
                elapsed=elapsed,
                timeout=timeout_used,
            )
        elif not outcome.ok:
            log_event(
                LOGGER,
                logging.WARNING,
                "site_trigger_failed",
                site_id=unit_id,
                url=url,
                error=outcome.error,
            )
        return outcome
