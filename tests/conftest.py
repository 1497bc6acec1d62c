from __future__ import annotations

import os

import pytest

from sitecron.config import load_runtime_config
from sitecron.context import build_context
from sitecron.storage import init_db


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetch:
    """Records trigger calls; URLs containing a ``failing`` marker get HTTP 500."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []

    def __call__(self, url, headers, timeout, verify_tls):
        self.calls.append(url)
        if any(marker in url for marker in self.failing):
            return 500, None
        return 200, None


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("SC_"):
            monkeypatch.delenv(name, raising=False)
    path = tmp_path / "data"
    monkeypatch.setenv("SC_DATA_DIR", str(path))
    return path


@pytest.fixture
def db_path(data_dir):
    return str(data_dir / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetch():
    return FakeFetch()


@pytest.fixture
def make_context(conn):
    def _make(clock=None, fetch=None, static=None):
        config = load_runtime_config(conn, static or {})
        if clock is None:
            return build_context(conn, config, fetch=fetch)
        return build_context(conn, config, clock=clock, fetch=fetch)

    return _make
