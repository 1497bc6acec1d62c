from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from .db import connect_db
from .models import Job
from .utils import json_dumps, parse_iso, utc_now_iso, utc_now_iso_offset

JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, requested_at, started_at,
    finished_at, locked_by, locked_at, error, attempts
"""


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def delete_setting(conn: Any, key: str) -> bool:
    cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
    conn.commit()
    return cursor.rowcount == 1


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
) -> str:
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, status, payload_json, result_json, requested_at, started_at,
             finished_at, locked_by, locked_at, error, attempts)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            now,
            None,
            None,
            None,
            None,
            None,
            0,
        ),
    )
    conn.commit()
    return job_id


def list_jobs(
    conn: Any,
    limit: int = 50,
    status: str | None = None,
    job_type: str | None = None,
) -> list[Job]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM jobs
        {where}
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    return _row_to_job(row) if row else None


def has_pending_job(conn: Any, job_type: str) -> bool:
    cursor = conn.execute(
        """
        SELECT 1 FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        LIMIT 1
        """,
        (job_type,),
    )
    return cursor.fetchone() is not None


def is_job_canceled(conn: Any, job_id: str) -> bool:
    row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0] == "canceled")


def count_jobs_by_status(conn: Any, job_type: str | None = None) -> dict[str, int]:
    if job_type:
        cursor = conn.execute(
            "SELECT status, COUNT(*) FROM jobs WHERE job_type = ? GROUP BY status",
            (job_type,),
        )
    else:
        cursor = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
    return {str(row[0]): int(row[1]) for row in cursor.fetchall()}


def count_jobs_finished_since(conn: Any, job_type: str, since_iso: str) -> dict[str, int]:
    cursor = conn.execute(
        """
        SELECT status, COUNT(*)
        FROM jobs
        WHERE job_type = ? AND finished_at IS NOT NULL AND finished_at >= ?
        GROUP BY status
        """,
        (job_type, since_iso),
    )
    return {str(row[0]): int(row[1]) for row in cursor.fetchall()}


def job_finished_at(job: Job) -> datetime | None:
    """When the job's task ran to a terminal state, or None while it is pending."""
    if not job.finished_at:
        return None
    return parse_iso(job.finished_at)


def cancel_jobs_by_type(
    conn: Any,
    job_type: str,
    status: str = "queued",
    reason: str = "canceled_by_admin",
) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'canceled',
            finished_at = ?,
            error = ?,
            locked_by = NULL,
            locked_at = NULL
        WHERE job_type = ? AND status = ?
        """,
        (now, reason, job_type, status),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    lock_clause = " FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
    for _ in range(20):
        with conn.transaction():
            if lock_timeout_seconds is not None:
                cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'queued',
                        locked_by = NULL,
                        locked_at = NULL,
                        started_at = NULL,
                        error = 'stale_lock_requeued'
                    WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                    """,
                    (cutoff,),
                )
            params: list[object] = []
            type_clause = ""
            if allowed_types:
                placeholders = ",".join(["?"] * len(allowed_types))
                type_clause = f" AND job_type IN ({placeholders})"
                params.extend(allowed_types)
            cursor = conn.execute(
                f"""
                SELECT {JOB_COLUMNS}
                FROM jobs
                WHERE status = 'queued' AND locked_by IS NULL {type_clause}
                ORDER BY requested_at ASC
                LIMIT 1{lock_clause}
                """,
                tuple(params),
            )
            row = cursor.fetchone()
            if not row:
                return None
            job = _row_to_job(row)
            now = utc_now_iso()
            not_before = job.payload.get("not_before")
            if isinstance(not_before, str) and not_before > now:
                if job.requested_at >= not_before:
                    # Earliest queued job is deferred, so everything behind it is too.
                    return None
                conn.execute(
                    "UPDATE jobs SET requested_at = ? WHERE id = ?",
                    (not_before, job.id),
                )
                continue
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
                WHERE id = ? AND status = 'queued' AND locked_by IS NULL
                """,
                (now, worker_id, now, job.id),
            )
            if cursor.rowcount != 1:
                continue
            return Job(
                id=job.id,
                job_type=job.job_type,
                status="running",
                payload=job.payload,
                result=job.result,
                requested_at=job.requested_at,
                started_at=now,
                finished_at=job.finished_at,
                locked_by=worker_id,
                locked_at=now,
                error=job.error,
                attempts=job.attempts,
            )
    return None


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_job(
    conn: Any,
    job_id: str,
    payload: dict[str, object],
    requested_at: str,
    error: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            requested_at = ?,
            payload_json = ?,
            result_json = NULL,
            started_at = NULL,
            finished_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?,
            attempts = attempts + 1
        WHERE id = ? AND status = 'running'
        """,
        (requested_at, json_dumps(payload), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
        attempts,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload,
        result=result,
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
        attempts=int(attempts or 0),
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
