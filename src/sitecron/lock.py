from __future__ import annotations

import logging
import os
import socket
import time
from typing import Any, Callable

from .models import Lock, LockHolder
from .utils import log_event

LOCK_KEY = "execution_lock"
LAST_RUN_KEY = "last_run"

LOGGER = logging.getLogger("sitecron.lock")


class ExecutionLock:
    """Network-wide run lock with a lease and a minimum interval between runs.

    With a cache that supports atomic ``add`` the write and the ownership
    check are one statement. Without it, the lock is written and read back,
    and a changed ``acquired_at`` means another writer won. That read-back
    narrows the race but cannot close it; short leases bound the damage.

    ``release`` is unconditional and does not check the holder.
    """

    def __init__(
        self,
        cache: Any,
        clock: Callable[[], float] = time.time,
        atomic: bool = True,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self.atomic = atomic and bool(getattr(cache, "supports_atomic_add", False))
        self.holder = LockHolder(host=socket.gethostname(), pid=os.getpid())

    def acquire(self, lease_ttl: float, min_interval: float) -> bool:
        now = self.clock()
        last_run = self.last_run_at()
        if last_run is not None and now - last_run < min_interval:
            log_event(
                LOGGER,
                logging.INFO,
                "lock_refused",
                reason="min_interval",
                since_last=f"{now - last_run:.2f}",
            )
            return False
        current = self.peek()
        if current is not None and current.is_valid(now):
            log_event(
                LOGGER,
                logging.INFO,
                "lock_refused",
                reason="held",
                host=current.holder.host,
                pid=current.holder.pid,
            )
            return False
        record = {
            "holder": {"host": self.holder.host, "pid": self.holder.pid},
            "acquired_at": now,
            "expires_at": now + lease_ttl,
        }
        if self.atomic:
            if not self.cache.add(LOCK_KEY, record, lease_ttl):
                log_event(LOGGER, logging.INFO, "lock_refused", reason="race_lost")
                return False
        else:
            self.cache.set(LOCK_KEY, record, lease_ttl)
            written = self.cache.get(LOCK_KEY)
            if not isinstance(written, dict) or written.get("acquired_at") != now:
                log_event(LOGGER, logging.INFO, "lock_refused", reason="race_lost")
                return False
        self.cache.set(LAST_RUN_KEY, {"timestamp": now}, max(lease_ttl, min_interval))
        log_event(
            LOGGER,
            logging.INFO,
            "lock_acquired",
            host=self.holder.host,
            pid=self.holder.pid,
            lease=lease_ttl,
        )
        return True

    def release(self) -> None:
        self.cache.delete(LOCK_KEY)
        log_event(LOGGER, logging.INFO, "lock_released")

    def is_locked(self) -> bool:
        current = self.peek()
        return current is not None and current.is_valid(self.clock())

    def peek(self) -> Lock | None:
        raw = self.cache.get(LOCK_KEY)
        if not isinstance(raw, dict):
            return None
        holder = raw.get("holder") or {}
        try:
            return Lock(
                holder=LockHolder(host=str(holder.get("host", "")), pid=int(holder.get("pid", 0))),
                acquired_at=float(raw["acquired_at"]),
                expires_at=float(raw["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("lock_record_invalid value=%s", raw)
            return None

    def last_run_at(self) -> float | None:
        marker = self.cache.get(LAST_RUN_KEY)
        if not isinstance(marker, dict):
            return None
        timestamp = marker.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            return None
        return float(timestamp)

    def clear(self) -> None:
        self.cache.delete(LOCK_KEY)
        self.cache.delete(LAST_RUN_KEY)
