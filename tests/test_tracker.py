import threading

from sitecron.cache import DbCache
from sitecron.stats import StatsAggregator
from sitecron.storage import init_db
from sitecron.tracker import RunTracker


def _tracker(conn, clock=None):
    cache = DbCache(conn, clock=clock) if clock else DbCache(conn)
    stats = StatsAggregator(cache, clock=clock) if clock else StatsAggregator(cache)
    tracker = RunTracker(cache, stats, clock=clock) if clock else RunTracker(cache, stats)
    return tracker, stats


def test_finalizes_once_after_expected_increments(conn, clock):
    tracker, stats = _tracker(conn, clock)
    tracker.start("run-1", expected=3)

    assert tracker.maybe_finalize() is None

    finalized = []
    for _ in range(3):
        tracker.increment("run-1")
        result = tracker.maybe_finalize()
        if result is not None:
            finalized.append(result)

    assert len(finalized) == 1
    assert finalized[0].processed == 3
    assert tracker.current() is None
    assert tracker.maybe_finalize() is None

    snapshot = stats.read()
    assert snapshot.total_runs == 1
    assert snapshot.total_units_processed == 3
    assert snapshot.units_processed_last_run == 3
    assert snapshot.last_run_at == clock.now


def test_foreign_run_id_does_not_mutate_state(conn, clock):
    tracker, _ = _tracker(conn, clock)
    tracker.start("run-live", expected=2)

    assert tracker.increment("run-stale") is None
    assert tracker.current().processed == 0

    bumped = tracker.increment("run-live")
    assert bumped.processed == 1


def test_increment_without_run_id_applies_to_live_run(conn, clock):
    tracker, stats = _tracker(conn, clock)
    tracker.start("live", expected=2)

    assert tracker.increment(None).processed == 1
    assert tracker.increment().processed == 2

    finalized = tracker.maybe_finalize()
    assert finalized.run_id == "live"
    assert finalized.processed == 2
    assert tracker.maybe_finalize() is None
    assert stats.read().total_runs == 1


def test_increment_without_run_is_ignored(conn, clock):
    tracker, _ = _tracker(conn, clock)
    assert tracker.increment("anything") is None
    assert tracker.current() is None


def test_new_run_replaces_previous_state(conn, clock):
    tracker, stats = _tracker(conn, clock)
    tracker.start("run-a", expected=5)
    tracker.increment("run-a")
    tracker.start("run-b", expected=1)

    tracker.increment("run-a")
    assert tracker.current().processed == 0
    tracker.increment("run-b")
    assert tracker.maybe_finalize().run_id == "run-b"
    assert stats.read().total_units_processed == 1


def test_zero_expected_never_finalizes(conn, clock):
    tracker, stats = _tracker(conn, clock)
    tracker.start("empty", expected=0)
    assert tracker.maybe_finalize() is None
    assert stats.read().total_runs == 0


def test_concurrent_increments_finalize_exactly_once(db_path):
    setup = init_db(db_path)
    tracker, stats = _tracker(setup)
    expected = 12
    tracker.start("run-threads", expected=expected)

    barrier = threading.Barrier(expected)
    finalized = []
    finalized_lock = threading.Lock()

    def complete_unit():
        connection = init_db(db_path)
        try:
            worker_tracker, _ = _tracker(connection)
            barrier.wait()
            worker_tracker.increment("run-threads")
            result = worker_tracker.maybe_finalize()
        finally:
            connection.close()
        if result is not None:
            with finalized_lock:
                finalized.append(result)

    threads = [threading.Thread(target=complete_unit) for _ in range(expected)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(finalized) == 1
    assert finalized[0].processed == expected
    snapshot = stats.read()
    assert snapshot.total_runs == 1
    assert snapshot.total_units_processed == expected
    setup.close()
