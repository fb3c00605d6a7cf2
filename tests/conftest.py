"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from cvsift.db.connection import Database
from cvsift.db.schema import initialize


class FakeClock:
    """Deterministic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".cvsift.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def vector_conn(tmp_db, tmp_path):
    """Thread-enabled second connection to the tmp_db file, for VectorStore."""
    conn = Database(tmp_path / ".cvsift.db").connect(threaded=True)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()
