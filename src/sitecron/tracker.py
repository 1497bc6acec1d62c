from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .models import FinalizedRun, RunState
from .utils import log_event

RUN_KEY = "current_run"
RUN_TTL_SECONDS = 86400

LOGGER = logging.getLogger("sitecron.tracker")


class RunTracker:
    """Counts finished site tasks for the live dispatch batch.

    Success and failure count the same toward ``processed``. Once every
    expected task has reported, the batch is folded into the network stats
    and its state is deleted. Increments for any other run are ignored.
    """

    def __init__(self, cache: Any, stats: Any, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self.stats = stats
        self.clock = clock

    def start(self, run_id: str, expected: int) -> RunState:
        state = RunState(
            run_id=run_id,
            expected=max(0, int(expected)),
            processed=0,
            started_at=self.clock(),
        )
        self.cache.set(RUN_KEY, _state_to_dict(state), RUN_TTL_SECONDS)
        log_event(LOGGER, logging.INFO, "run_started", run_id=run_id, expected=state.expected)
        return state

    def current(self) -> RunState | None:
        return _state_from_dict(self.cache.get(RUN_KEY))

    def increment(self, run_id: str | None = None) -> RunState | None:
        result: RunState | None = None

        def bump(stored: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal result
            state = _state_from_dict(stored)
            if state is None:
                return None
            if run_id is not None and state.run_id != run_id:
                log_event(
                    LOGGER,
                    logging.INFO,
                    "run_increment_ignored",
                    run_id=run_id,
                    live_run_id=state.run_id,
                )
                return None
            result = RunState(
                run_id=state.run_id,
                expected=state.expected,
                processed=state.processed + 1,
                started_at=state.started_at,
            )
            return _state_to_dict(result)

        self.cache.update(RUN_KEY, bump, RUN_TTL_SECONDS)
        return result

    def maybe_finalize(self) -> FinalizedRun | None:
        # Deleting the state is the claim, so concurrent finalizers record once.
        claimed = _state_from_dict(self.cache.take(RUN_KEY, _is_complete))
        if claimed is None:
            return None
        self.stats.record_run(claimed.processed)
        log_event(
            LOGGER,
            logging.INFO,
            "run_finalized",
            run_id=claimed.run_id,
            processed=claimed.processed,
            expected=claimed.expected,
        )
        return FinalizedRun(
            run_id=claimed.run_id,
            processed=claimed.processed,
            expected=claimed.expected,
        )

    def clear(self) -> None:
        self.cache.delete(RUN_KEY)


def _is_complete(stored: Any) -> bool:
    state = _state_from_dict(stored)
    return state is not None and state.expected > 0 and state.processed >= state.expected


def _state_to_dict(state: RunState) -> dict[str, object]:
    return {
        "run_id": state.run_id,
        "expected": state.expected,
        "processed": state.processed,
        "started_at": state.started_at,
    }


def _state_from_dict(stored: Any) -> RunState | None:
    if not isinstance(stored, dict) or not stored.get("run_id"):
        return None
    try:
        return RunState(
            run_id=str(stored["run_id"]),
            expected=int(stored.get("expected", 0)),
            processed=int(stored.get("processed", 0)),
            started_at=float(stored.get("started_at", 0.0)),
        )
    except (TypeError, ValueError):
        return None
