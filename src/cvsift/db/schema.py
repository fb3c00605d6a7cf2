"""Schema version checks around the migration runner."""

from __future__ import annotations

import sqlite3

from cvsift.db.migrations import MIGRATIONS, run_migrations
from cvsift.errors import CvSiftError

CURRENT_VERSION = MIGRATIONS[-1][0]


def schema_version(conn: sqlite3.Connection) -> int:
    """Return the applied schema version, 0 for a database never initialized."""
    exists = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if exists is None:
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def initialize(conn: sqlite3.Connection) -> int:
    """Bring the database up to CURRENT_VERSION and return that version.

    Raises CvSiftError for a database written by a newer cvsift.
    """
    found = schema_version(conn)
    if found > CURRENT_VERSION:
        raise CvSiftError(
            f"Database schema v{found} is newer than this cvsift supports "
            f"(v{CURRENT_VERSION}). Upgrade cvsift."
        )
    run_migrations(conn)
    return schema_version(conn)
