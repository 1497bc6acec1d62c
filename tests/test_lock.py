import threading

from sitecron.cache import DbCache
from sitecron.lock import LAST_RUN_KEY, LOCK_KEY, ExecutionLock
from sitecron.storage import init_db


def test_acquire_is_exclusive_within_lease(conn, clock):
    cache = DbCache(conn, clock=clock)
    first = ExecutionLock(cache, clock=clock)
    second = ExecutionLock(cache, clock=clock)

    assert first.acquire(300, 0) is True
    assert second.acquire(300, 0) is False
    assert first.is_locked()

    holder = first.peek().holder
    assert holder.pid > 0
    assert holder.host


def test_acquire_refused_within_min_interval_even_after_lock_expired(conn, clock):
    lock = ExecutionLock(DbCache(conn, clock=clock), clock=clock)

    assert lock.acquire(10, 60) is True
    clock.advance(30)
    assert lock.is_locked() is False
    assert lock.acquire(10, 60) is False

    clock.advance(31)
    assert lock.acquire(10, 60) is True


def test_release_then_acquire_succeeds_after_min_interval(conn, clock):
    lock = ExecutionLock(DbCache(conn, clock=clock), clock=clock)

    assert lock.acquire(300, 60)
    lock.release()
    assert lock.peek() is None

    clock.advance(60)
    assert lock.acquire(300, 60)


def test_last_run_marker_outlives_short_lease(conn, clock):
    cache = DbCache(conn, clock=clock)
    lock = ExecutionLock(cache, clock=clock)

    assert lock.acquire(5, 60)
    clock.advance(30)
    assert cache.get(LOCK_KEY) is None
    assert cache.get(LAST_RUN_KEY) == {"timestamp": clock.now - 30}


def test_double_read_fallback_without_atomic_add(conn, clock):
    cache = DbCache(conn, clock=clock, atomic=False)
    lock = ExecutionLock(cache, clock=clock)
    other = ExecutionLock(cache, clock=clock)

    assert lock.atomic is False
    assert lock.acquire(300, 0) is True
    assert other.acquire(300, 0) is False


class _RacingCache(DbCache):
    """Lets a rival writer replace the lock between our write and read-back."""

    def set(self, key, value, ttl=None):
        super().set(key, value, ttl)
        if key == LOCK_KEY:
            rival = dict(value, acquired_at=value["acquired_at"] + 1)
            super().set(key, rival, ttl)


def test_read_back_mismatch_refuses_without_marking_last_run(conn, clock):
    lock = ExecutionLock(_RacingCache(conn, clock=clock, atomic=False), clock=clock)

    assert lock.acquire(300, 0) is False
    assert lock.last_run_at() is None


def test_atomic_acquire_can_be_disabled(conn, clock):
    lock = ExecutionLock(DbCache(conn, clock=clock), clock=clock, atomic=False)
    assert lock.atomic is False
    assert lock.acquire(300, 0)


def test_concurrent_acquire_has_single_winner(db_path):
    init_db(db_path).close()
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def attempt():
        connection = init_db(db_path)
        try:
            lock = ExecutionLock(DbCache(connection))
            barrier.wait()
            won = lock.acquire(300, 0)
        finally:
            connection.close()
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == workers
    assert results.count(True) == 1


def test_clear_removes_lock_and_marker(conn, clock):
    cache = DbCache(conn, clock=clock)
    lock = ExecutionLock(cache, clock=clock)
    lock.acquire(300, 60)

    lock.clear()

    assert lock.peek() is None
    assert lock.last_run_at() is None
    assert lock.acquire(300, 60)
