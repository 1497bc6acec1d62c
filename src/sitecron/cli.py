from __future__ import annotations

import argparse
import logging
import os
from dataclasses import asdict

from .config import ConfigError, load_runtime_config, load_static_config
from .context import Context, build_context
from .dispatcher import (
    DEFAULT_SCHEDULE_SECONDS,
    clear_queue,
    get_schedule,
    queue_status,
    schedule_recurring,
    unschedule_recurring,
)
from .errors import DirectoryError
from .registry import import_sites, list_sites
from .security.tokens import TOKEN_ENV, delete_token, generate_token, set_token, token_source
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("sitecron.cli")


def _load_context(args: argparse.Namespace, logger: logging.Logger) -> Context | None:
    conn = init_db()
    try:
        static = load_static_config(args.config)
        return build_context(conn, load_runtime_config(conn, static))
    except ConfigError as exc:
        conn.close()
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_token_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    token = generate_token(args.bytes)
    try:
        set_token(conn, token)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "token_rejected", error=str(exc))
        return 1
    if os.environ.get(TOKEN_ENV):
        log_event(logger, logging.WARNING, "token_overridden", source="environment")
    print(token)
    return 0


def _cmd_token_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        set_token(conn, args.token)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "token_rejected", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "token_set")
    return 0


def _cmd_token_delete(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    deleted = delete_token(conn)
    log_event(logger, logging.INFO, "token_deleted", deleted=deleted)
    return 0


def _cmd_token_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    ctx = _load_context(args, logger)
    if ctx is None:
        return 1
    log_event(
        logger,
        logging.INFO,
        "token_status",
        configured=ctx.authenticator.is_configured(),
        source=token_source(ctx.conn, ctx.config.static_endpoint_token),
    )
    return 0


def _cmd_sites_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    ctx = _load_context(args, logger)
    if ctx is None:
        return 1
    try:
        count = import_sites(ctx.conn, args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sites_import_error", error=str(exc))
        return 1
    ctx.registry.invalidate()
    log_event(logger, logging.INFO, "sites_import_complete", count=count)
    return 0


def _cmd_sites_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    sites = list_sites(conn)
    if not sites:
        log_event(
            logger,
            logging.WARNING,
            "no_sites",
            hint="Import sites with `sitecron sites import sites.yml`",
        )
        return 1
    for site in sites:
        log_event(logger, logging.INFO, "site", **site)
    log_event(logger, logging.INFO, "sites_listed", count=len(sites))
    return 0


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    ctx = _load_context(args, logger)
    if ctx is None:
        return 1
    cfg = ctx.config.lock
    if not ctx.lock.acquire(cfg.lease_ttl_seconds, cfg.min_interval_seconds):
        log_event(logger, logging.ERROR, "run_refused", reason="Cron job already running")
        return 1
    try:
        if args.immediate:
            result = ctx.immediate_runner.run_all()
        else:
            result = ctx.dispatcher.dispatch_all()
    except DirectoryError as exc:
        log_event(logger, logging.ERROR, "run_failed", error=str(exc))
        return 1
    finally:
        ctx.lock.release()
    log_event(
        logger,
        logging.INFO if result.success else logging.ERROR,
        "run_result",
        success=result.success,
        count=result.count,
        execution_time=result.execution_time,
        message=result.message.replace("\n", "; "),
    )
    return 0 if result.success else 1


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    ctx = _load_context(args, logger)
    if ctx is None:
        return 1
    lock = ctx.lock.peek()
    run = ctx.tracker.current()
    log_event(
        logger,
        logging.INFO,
        "lock_status",
        locked=ctx.lock.is_locked(),
        holder=asdict(lock.holder) if lock else None,
        last_run_at=ctx.lock.last_run_at(),
    )
    log_event(
        logger,
        logging.INFO,
        "token_status",
        configured=ctx.authenticator.is_configured(),
        source=ctx.token_source,
    )
    log_event(logger, logging.INFO, "network_stats", **asdict(ctx.stats.read()))
    log_event(logger, logging.INFO, "today_stats", **ctx.stats.today(ctx.conn, ctx.config.app.timezone))
    log_event(logger, logging.INFO, "current_run", **(asdict(run) if run else {"run_id": None}))
    log_event(logger, logging.INFO, "schedule", **(get_schedule(ctx.conn) or {"frequency_seconds": None}))
    return 0


def _cmd_queue_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    status = queue_status(conn)
    log_event(
        logger,
        logging.INFO,
        "queue_status",
        pending=status["pending"],
        in_progress=status["in_progress"],
        failed=status["failed"],
    )
    for job in status["failed_jobs"]:
        log_event(logger, logging.INFO, "failed_job", **job)
    return 0


def _cmd_queue_clear(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    canceled = clear_queue(conn)
    log_event(logger, logging.INFO, "queue_clear_complete", canceled=canceled)
    return 0


def _cmd_schedule_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        schedule_recurring(conn, args.frequency)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "schedule_rejected", error=str(exc))
        return 1
    return 0


def _cmd_schedule_unset(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    unschedule_recurring(conn)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    init_db()
    log_event(logger, logging.INFO, "db_migrated")
    return 0


def _cmd_uninstall(args: argparse.Namespace, logger: logging.Logger) -> int:
    ctx = _load_context(args, logger)
    if ctx is None:
        return 1
    ctx.registry.invalidate()
    ctx.lock.clear()
    ctx.tracker.clear()
    ctx.stats.reset()
    purged = ctx.cache.purge_expired()
    log_event(logger, logging.INFO, "caches_cleared", purged=purged)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitecron", description="sitecron CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to SC_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    token_parser = subparsers.add_parser("token", help="Manage the trigger endpoint token")
    token_subparsers = token_parser.add_subparsers(dest="token_command", required=True)

    token_generate = token_subparsers.add_parser("generate", help="Generate and store a new token")
    token_generate.add_argument("--bytes", type=int, default=32, help="Random bytes (min 16)")
    token_generate.set_defaults(func=_cmd_token_generate)

    token_set = token_subparsers.add_parser("set", help="Store an operator-supplied token")
    token_set.add_argument("token", help="Token of at least 16 characters")
    token_set.set_defaults(func=_cmd_token_set)

    token_delete = token_subparsers.add_parser("delete", help="Delete the stored token")
    token_delete.set_defaults(func=_cmd_token_delete)

    token_show = token_subparsers.add_parser("show", help="Show whether a token is configured")
    token_show.set_defaults(func=_cmd_token_show)

    sites_parser = subparsers.add_parser("sites", help="Manage the site directory")
    sites_subparsers = sites_parser.add_subparsers(dest="sites_command", required=True)

    sites_import = sites_subparsers.add_parser("import", help="Import sites from YAML")
    sites_import.add_argument("path", help="Path to sites YAML file")
    sites_import.set_defaults(func=_cmd_sites_import)

    sites_list = sites_subparsers.add_parser("list", help="List sites")
    sites_list.set_defaults(func=_cmd_sites_list)

    run_parser = subparsers.add_parser("run", help="Dispatch cron triggers for all sites now")
    run_parser.add_argument(
        "--immediate",
        action="store_true",
        help="Trigger sites inline instead of queueing jobs",
    )
    run_parser.set_defaults(func=_cmd_run)

    status_parser = subparsers.add_parser("status", help="Show lock, token, run and stats status")
    status_parser.set_defaults(func=_cmd_status)

    queue_parser = subparsers.add_parser("queue", help="Job queue commands")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)

    queue_status_parser = queue_subparsers.add_parser("status", help="Show queue counts")
    queue_status_parser.set_defaults(func=_cmd_queue_status)

    queue_clear = queue_subparsers.add_parser("clear", help="Cancel queued site triggers")
    queue_clear.set_defaults(func=_cmd_queue_clear)

    schedule_parser = subparsers.add_parser("schedule", help="Recurring dispatch")
    schedule_subparsers = schedule_parser.add_subparsers(dest="schedule_command", required=True)

    schedule_set = schedule_subparsers.add_parser("set", help="Enable recurring dispatch")
    schedule_set.add_argument(
        "--frequency",
        type=int,
        default=DEFAULT_SCHEDULE_SECONDS,
        help="Seconds between scheduled dispatches",
    )
    schedule_set.set_defaults(func=_cmd_schedule_set)

    schedule_unset = schedule_subparsers.add_parser("unset", help="Disable recurring dispatch")
    schedule_unset.set_defaults(func=_cmd_schedule_unset)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    uninstall_parser = subparsers.add_parser("uninstall", help="Clear cached coordination state")
    uninstall_parser.set_defaults(func=_cmd_uninstall)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
