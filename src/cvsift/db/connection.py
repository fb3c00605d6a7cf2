"""Opening the cvsift SQLite file with sqlite-vec loaded."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

# Applied to every new connection, in order.
_PRAGMAS: tuple[str, ...] = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA busy_timeout = 5000",
)


def _load_vec(conn: sqlite3.Connection) -> None:
    conn.enable_load_extension(True)
    try:
        sqlite_vec.load(conn)
    finally:
        conn.enable_load_extension(False)


class Database:
    """One SQLite file shared by the checksum registry and the vector store.

    The registry and the vector store each get their own connection from
    connect(); WAL mode lets them read while the other writes.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self, *, threaded: bool = False) -> sqlite3.Connection:
        """Return a new connection with rows as sqlite3.Row.

        Args:
            threaded: Disable sqlite3's same-thread check so the connection can
                be driven through ``asyncio.to_thread``. Callers then own the
                serialization of access.
        """
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=not threaded)
        conn.row_factory = sqlite3.Row
        _load_vec(conn)
        for pragma in _PRAGMAS:
            conn.execute(pragma)
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
