"""cvsift database layer: checksum registry and vector store."""

from cvsift.db.connection import Database
from cvsift.db.migrations import MIGRATIONS, run_migrations
from cvsift.db.registry import ChecksumRegistry
from cvsift.db.schema import initialize, schema_version
from cvsift.db.vectors import ChunkPayload, SearchHit, VectorRecord, VectorStore

__all__ = [
    "Database",
    "initialize",
    "schema_version",
    "run_migrations",
    "MIGRATIONS",
    "ChecksumRegistry",
    "ChunkPayload",
    "SearchHit",
    "VectorRecord",
    "VectorStore",
]
