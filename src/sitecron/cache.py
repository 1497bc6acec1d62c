from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from .utils import json_dumps, utc_now_iso

Clock = Callable[[], float]

LOGGER = logging.getLogger("sitecron.cache")


class DbCache:
    """Key/value store with per-key TTL on the shared ``transients`` table.

    Every coordinator process and worker sees the same rows, so this is the
    fleet-wide cache the lock, rate limiter and run tracker are built on.
    A TTL of zero or less stores the value without expiry. Expired rows are
    never returned and are removed lazily on read or by ``purge_expired``.

    ``update`` and ``take`` run their read and write inside one transaction
    (``BEGIN IMMEDIATE`` on SQLite, ``SELECT ... FOR UPDATE`` on PostgreSQL).
    """

    def __init__(self, conn: Any, clock: Clock = time.time, atomic: bool = True) -> None:
        self.conn = conn
        self.clock = clock
        self.supports_atomic_add = atomic

    def get(self, key: str) -> Any | None:
        row = self.conn.execute(
            "SELECT value, expires_at FROM transients WHERE key = ?",
            (key,),
        ).fetchone()
        if not row:
            return None
        value, expires_at = row
        if self._expired(expires_at):
            self.conn.execute(
                "DELETE FROM transients WHERE key = ? AND expires_at = ?",
                (key, expires_at),
            )
            self.conn.commit()
            return None
        return _decode(key, value)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._write(key, value, ttl)
        self.conn.commit()

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Store ``value`` only if ``key`` is absent or expired, in one statement."""
        if not self.supports_atomic_add:
            raise NotImplementedError("atomic add is disabled for this cache")
        cursor = self.conn.execute(
            """
            INSERT INTO transients (key, value, expires_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            WHERE transients.expires_at IS NOT NULL AND transients.expires_at <= ?
            """,
            (key, json_dumps(value), self._expires_at(ttl), utc_now_iso(), self.clock()),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def update(
        self,
        key: str,
        mutate: Callable[[Any | None], Any | None],
        ttl: float | None = None,
    ) -> Any | None:
        """Apply ``mutate`` to the live value under a row lock.

        ``mutate`` receives the current value (None when absent or expired)
        and returns the value to store, or None to leave the key untouched.
        """
        with self.conn.transaction():
            current = self._read_for_update(key)
            updated = mutate(current)
            if updated is None:
                return current
            self._write(key, updated, ttl)
            return updated

    def take(self, key: str, predicate: Callable[[Any], bool]) -> Any | None:
        """Delete and return the live value when ``predicate`` accepts it."""
        with self.conn.transaction():
            current = self._read_for_update(key)
            if current is None or not predicate(current):
                return None
            self.conn.execute("DELETE FROM transients WHERE key = ?", (key,))
            return current

    def delete(self, key: str) -> bool:
        cursor = self.conn.execute("DELETE FROM transients WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount == 1

    def purge_expired(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM transients WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (self.clock(),),
        )
        self.conn.commit()
        return int(cursor.rowcount or 0)

    def _read_for_update(self, key: str) -> Any | None:
        lock_clause = " FOR UPDATE" if self.conn.backend == "postgres" else ""
        row = self.conn.execute(
            f"SELECT value, expires_at FROM transients WHERE key = ?{lock_clause}",
            (key,),
        ).fetchone()
        if not row or self._expired(row[1]):
            return None
        return _decode(key, row[0])

    def _write(self, key: str, value: Any, ttl: float | None) -> None:
        self.conn.execute(
            """
            INSERT INTO transients (key, value, expires_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (key, json_dumps(value), self._expires_at(ttl), utc_now_iso()),
        )

    def _expired(self, expires_at: Any) -> bool:
        return expires_at is not None and float(expires_at) <= self.clock()

    def _expires_at(self, ttl: float | None) -> float | None:
        if ttl is None or ttl <= 0:
            return None
        return self.clock() + float(ttl)


def _decode(key: str, value: str) -> Any | None:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        LOGGER.warning("cache_value_invalid key=%s", key)
        return None
