from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Unit:
    id: int
    base_url: str
    eligible: bool = True


@dataclass(frozen=True)
class LockHolder:
    host: str
    pid: int


@dataclass(frozen=True)
class Lock:
    holder: LockHolder
    acquired_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class RunState:
    run_id: str
    expected: int
    processed: int
    started_at: float


@dataclass(frozen=True)
class NetworkStats:
    total_runs: int = 0
    last_run_at: float | None = None
    total_units_processed: int = 0
    units_processed_last_run: int = 0


@dataclass(frozen=True)
class FinalizedRun:
    run_id: str
    processed: int
    expected: int


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
    attempts: int = 0


@dataclass(frozen=True)
class SubmissionResult:
    unit_id: int
    ok: bool
    job_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TaskOutcome:
    unit_id: int | None
    url: str
    ok: bool
    response_code: int | None
    error: str | None
    execution_time: float
    timeout_used: float


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    count: int
    execution_time: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "count": self.count,
            "execution_time": self.execution_time,
        }
