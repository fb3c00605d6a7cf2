"""Forward-only migration runner for the cvsift registry schema.

The vector table (vec_chunks) is NOT migration-managed: its dimensionality is
only known after the first successful embedding. See VectorStore.ensure_collection().
"""

from __future__ import annotations

import sqlite3

# Created ahead of any migration so the runner can read the recorded version.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id          TEXT PRIMARY KEY,
    kind        TEXT NOT NULL,
    value       TEXT NOT NULL,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS documents (
    id            TEXT PRIMARY KEY,
    source_id     TEXT REFERENCES sources(id) ON DELETE CASCADE,
    file_name     TEXT NOT NULL,
    location      TEXT NOT NULL,
    checksum      TEXT NOT NULL UNIQUE,
    text_content  TEXT,
    is_indexed    INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_documents_location ON documents(location);

CREATE TABLE IF NOT EXISTS analysis_results (
    id                 TEXT PRIMARY KEY,
    document_id        TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    job_context_hash   TEXT NOT NULL,
    suitability_score  REAL NOT NULL DEFAULT 0,
    is_suitable        INTEGER NOT NULL DEFAULT 0,
    report             TEXT NOT NULL DEFAULT '{}',
    created_at         DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (document_id, job_context_hash)
);

CREATE TABLE IF NOT EXISTS chunk_payloads (
    rowid        INTEGER PRIMARY KEY,
    document_id  TEXT NOT NULL,
    source       TEXT NOT NULL,
    file_name    TEXT NOT NULL DEFAULT '',
    chunk_index  INTEGER NOT NULL,
    text         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunk_payloads_document ON chunk_payloads(document_id);
"""

# Ordered (version, script) pairs. Never edit a shipped script; append a new one.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> list[int]:
    """Run every script newer than the recorded version; return what ran.

    Calling it again on an up-to-date database is a no-op.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    (recorded,) = conn.execute(
        "SELECT COALESCE(MAX(version), 0) FROM schema_version"
    ).fetchone()

    applied: list[int] = []
    for version, script in sorted(MIGRATIONS):
        if version <= recorded:
            continue
        # executescript() commits any open transaction first
        conn.executescript(script)
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        conn.commit()
        applied.append(version)
    return applied
