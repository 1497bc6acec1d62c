from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from .cache import DbCache
from .config import Config, get_version
from .dispatcher import Dispatcher, ImmediateRunner
from .lock import ExecutionLock
from .registry import CachedSiteRegistry, DbSiteDirectory
from .security.rate_limit import RateLimiter
from .security.tokens import TokenAuthenticator, resolve_token, token_source
from .site_task import Fetcher, SiteTask
from .stats import StatsAggregator
from .tracker import RunTracker
from .utils import detailed_logging_enabled


@dataclass(frozen=True)
class Context:
    conn: Any
    config: Config
    cache: DbCache
    rate_limiter: RateLimiter
    authenticator: TokenAuthenticator
    token_source: str | None
    lock: ExecutionLock
    stats: StatsAggregator
    tracker: RunTracker
    registry: CachedSiteRegistry
    site_task: SiteTask
    dispatcher: Dispatcher
    immediate_runner: ImmediateRunner


def build_context(
    conn: Any,
    config: Config,
    clock: Callable[[], float] = time.time,
    fetch: Fetcher | None = None,
) -> Context:
    cache = DbCache(conn, clock=clock)
    stats = StatsAggregator(cache, clock=clock)
    tracker = RunTracker(cache, stats, clock=clock)
    registry = CachedSiteRegistry(
        cache,
        DbSiteDirectory(conn),
        ttl=config.sites.cache_ttl_seconds,
        max_sites=config.sites.max_sites,
        clock=clock,
    )
    site_task = SiteTask(
        tracker,
        timeout_seconds=config.http.timeout_seconds,
        verify_tls=config.http.verify_tls,
        user_agent=config.http.user_agent or f"sitecron/{get_version()}",
        detailed_logging=detailed_logging_enabled(config.logging.detailed),
        fetch=fetch,
    )
    return Context(
        conn=conn,
        config=config,
        cache=cache,
        rate_limiter=RateLimiter(cache, clock=clock),
        authenticator=TokenAuthenticator(resolve_token(conn, config.static_endpoint_token)),
        token_source=token_source(conn, config.static_endpoint_token),
        lock=ExecutionLock(cache, clock=clock, atomic=config.lock.atomic_acquire),
        stats=stats,
        tracker=tracker,
        registry=registry,
        site_task=site_task,
        dispatcher=Dispatcher(conn, registry, tracker, clock=clock),
        immediate_runner=ImmediateRunner(
            registry, site_task, stats, timeout=config.immediate.timeout_seconds
        ),
    )
