from __future__ import annotations

import logging
import time
from typing import Any, Callable

import yaml

from .config import ConfigError
from .errors import DirectoryError
from .models import Unit
from .utils import log_event, utc_now_iso

SITES_CACHE_KEY = "sites"
LEGACY_SITES_CACHE_KEY = "dss_cron_sites"

SITE_FLAGS = ("public", "archived", "deleted", "spam")

LOGGER = logging.getLogger("sitecron.registry")


class DbSiteDirectory:
    """Reads eligible sites from the ``sites`` table."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def list_units(self, limit: int) -> list[Unit]:
        try:
            rows = self.conn.execute(
                """
                SELECT id, base_url
                FROM sites
                WHERE public = 1 AND archived = 0 AND deleted = 0 AND spam = 0
                ORDER BY id ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        except Exception as exc:  # noqa: BLE001
            raise DirectoryError(f"Site directory unavailable: {exc}") from exc
        return [Unit(id=int(row[0]), base_url=str(row[1]), eligible=True) for row in rows]


class CachedSiteRegistry:
    def __init__(
        self,
        cache: Any,
        directory: Any,
        ttl: int = 3600,
        max_sites: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.directory = directory
        self.ttl = ttl
        self.max_sites = max_sites
        self.clock = clock

    def get_units(self) -> list[Unit]:
        cached = self.cache.get(SITES_CACHE_KEY)
        if isinstance(cached, dict) and self._is_fresh(cached):
            return [_unit_from_dict(item) for item in cached.get("units") or []]

        self.cache.delete(LEGACY_SITES_CACHE_KEY)
        units = self.directory.list_units(self.max_sites)
        now = self.clock()
        self.cache.set(
            SITES_CACHE_KEY,
            {
                "units": [{"id": unit.id, "base_url": unit.base_url} for unit in units],
                "fetched_at": now,
                "ttl": self.ttl,
            },
            self.ttl,
        )
        log_event(LOGGER, logging.DEBUG, "sites_cache_refreshed", count=len(units))
        return units

    def invalidate(self) -> None:
        self.cache.delete(SITES_CACHE_KEY)
        self.cache.delete(LEGACY_SITES_CACHE_KEY)
        log_event(LOGGER, logging.INFO, "sites_cache_cleared")

    def _is_fresh(self, cached: dict[str, Any]) -> bool:
        fetched_at = cached.get("fetched_at")
        ttl = cached.get("ttl", self.ttl)
        if not isinstance(fetched_at, (int, float)) or not isinstance(ttl, (int, float)):
            return False
        if ttl <= 0:
            return True
        return self.clock() - fetched_at < ttl


def upsert_site(
    conn: Any,
    base_url: str,
    site_id: int | None = None,
    public: bool = True,
    archived: bool = False,
    deleted: bool = False,
    spam: bool = False,
) -> int:
    base_url = base_url.strip()
    if not base_url:
        raise ConfigError("site url is required")
    if site_id is None:
        row = conn.execute("SELECT id FROM sites WHERE base_url = ?", (base_url,)).fetchone()
        if row:
            site_id = int(row[0])
        else:
            row = conn.execute("SELECT COALESCE(MAX(id), 0) FROM sites").fetchone()
            site_id = int(row[0]) + 1
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sites (id, base_url, public, archived, deleted, spam, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            base_url = excluded.base_url,
            public = excluded.public,
            archived = excluded.archived,
            deleted = excluded.deleted,
            spam = excluded.spam,
            updated_at = excluded.updated_at
        """,
        (
            site_id,
            base_url,
            int(public),
            int(archived),
            int(deleted),
            int(spam),
            now,
            now,
        ),
    )
    conn.commit()
    return site_id


def set_site_flags(conn: Any, site_id: int, **flags: bool) -> bool:
    unknown = set(flags) - set(SITE_FLAGS)
    if unknown:
        raise ConfigError(f"unknown site flags: {', '.join(sorted(unknown))}")
    if not flags:
        return False
    assignments = ", ".join(f"{name} = ?" for name in flags)
    params: list[object] = [int(bool(value)) for value in flags.values()]
    params.extend([utc_now_iso(), site_id])
    cursor = conn.execute(
        f"UPDATE sites SET {assignments}, updated_at = ? WHERE id = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_sites(conn: Any) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT id, base_url, public, archived, deleted, spam
        FROM sites
        ORDER BY id ASC
        """
    ).fetchall()
    sites = []
    for row in rows:
        flags = {name: bool(value) for name, value in zip(SITE_FLAGS, row[2:])}
        sites.append(
            {
                "id": int(row[0]),
                "base_url": row[1],
                **flags,
                "eligible": _is_eligible(flags),
            }
        )
    return sites


def find_unit_by_url(conn: Any, url: str) -> Unit | None:
    wanted = _normalize_url(url)
    if not wanted:
        return None
    for site in list_sites(conn):
        if _normalize_url(str(site["base_url"])) == wanted:
            return Unit(
                id=int(site["id"]),
                base_url=str(site["base_url"]),
                eligible=bool(site["eligible"]),
            )
    return None


def import_sites(conn: Any, path: str) -> int:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Sites file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    entries = data.get("sites") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigError(f"{path} must contain a list of sites")

    count = 0
    for index, entry in enumerate(entries):
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict):
            raise ConfigError(f"sites[{index}] must be a mapping or a URL")
        url = entry.get("url") or entry.get("base_url")
        if not isinstance(url, str) or not url.strip():
            raise ConfigError(f"sites[{index}].url is required")
        site_id = entry.get("id")
        if site_id is not None and (not isinstance(site_id, int) or isinstance(site_id, bool)):
            raise ConfigError(f"sites[{index}].id must be an integer")
        flags = {}
        for name in SITE_FLAGS:
            if name in entry:
                if not isinstance(entry[name], bool):
                    raise ConfigError(f"sites[{index}].{name} must be a boolean")
                flags[name] = entry[name]
        upsert_site(conn, url, site_id=site_id, **flags)
        count += 1
    log_event(LOGGER, logging.INFO, "sites_imported", path=path, count=count)
    return count


def _is_eligible(flags: dict[str, bool]) -> bool:
    return flags["public"] and not (flags["archived"] or flags["deleted"] or flags["spam"])


def _normalize_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def _unit_from_dict(item: dict[str, Any]) -> Unit:
    return Unit(id=int(item["id"]), base_url=str(item["base_url"]), eligible=True)
