from __future__ import annotations

import hashlib
import ipaddress
import logging
import time
from typing import Any, Callable, Mapping

from ..utils import log_event

FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "client-ip")

LOGGER = logging.getLogger("sitecron.security")


class RateLimiter:
    """Sliding-window request counter per client key, stored in the shared cache.

    The window is recomputed from the stored timestamps on every check, so
    there are no bucket boundaries to game. Rejected calls are not recorded.
    """

    def __init__(self, cache: Any, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self.clock = clock

    def admit(self, client_key: str, max_requests: int, window: float) -> bool:
        now = self.clock()
        admitted = False

        def record(stored: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal admitted
            timestamps = _live_timestamps(stored, now, window)
            if len(timestamps) >= max_requests:
                return None
            admitted = True
            timestamps.append(now)
            return {"client_key": client_key, "timestamps": timestamps}

        self.cache.update(rate_limit_key(client_key), record, window)
        if not admitted:
            log_event(
                LOGGER,
                logging.WARNING,
                "rate_limit_exceeded",
                client=client_key,
                max_requests=max_requests,
                window=window,
            )
        return admitted

    def remaining(self, client_key: str, max_requests: int, window: float) -> int:
        stored = self.cache.get(rate_limit_key(client_key))
        used = len(_live_timestamps(stored, self.clock(), window))
        return max(0, max_requests - used)


def _live_timestamps(stored: Any, now: float, window: float) -> list[float]:
    if not isinstance(stored, dict):
        return []
    return [
        float(ts)
        for ts in stored.get("timestamps") or []
        if isinstance(ts, (int, float)) and now - float(ts) < window
    ]


def rate_limit_key(client_key: str) -> str:
    digest = hashlib.md5(client_key.encode("utf-8")).hexdigest()
    return f"rate_limit_{digest}"


def client_key_from_request(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """Best-effort client address for rate limiting.

    Forwarding headers are caller-controlled, so the result is advisory and
    can be spoofed. It only spreads the rate budget, it never grants access.
    """
    lowered = {str(name).lower(): value for name, value in headers.items()}
    for header in FORWARDING_HEADERS:
        value = lowered.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip()
        if _is_routable(candidate):
            return candidate
    return remote_addr or "unknown"


def _is_routable(value: str) -> bool:
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_reserved
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_unspecified
    )
