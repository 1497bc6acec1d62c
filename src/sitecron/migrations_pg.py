from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("sitecron.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    if "pg_bootstrap_001" not in applied:
        _bootstrap_schema(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_bootstrap_001", utc_now_iso()),
        )
        logger.info("migration_applied version=pg_bootstrap_001")
    conn.commit()


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transients (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expires_at DOUBLE PRECISION NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_transients_expires ON transients(expires_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sites (
            id BIGINT PRIMARY KEY,
            base_url TEXT NOT NULL UNIQUE,
            public INTEGER NOT NULL DEFAULT 1,
            archived INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            spam INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL,
            attempts INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_requested ON jobs(status, requested_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_type_finished ON jobs(job_type, finished_at)"
    )
