"""VectorStore: chunk vectors in a sqlite-vec virtual table.

The collection (vec_chunks) is created lazily with the dimensionality of the
first embedding seen and uses cosine distance. Payloads live in the
chunk_payloads table, joined on rowid. All SQL runs in a worker thread on a
dedicated connection; an asyncio.Lock serializes access to it.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass

from cvsift.errors import StorageFailed

COLLECTION = "vec_chunks"
_META_TABLE = "vec_collection_meta"


@dataclass
class ChunkPayload:
    """Payload stored alongside every vector."""

    text: str
    source: str
    file_name: str
    chunk_index: int
    document_id: str

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "source": self.source,
            "fileName": self.file_name,
            "chunkIndex": self.chunk_index,
            "documentId": self.document_id,
        }


@dataclass
class VectorRecord:
    embedding: list[float]
    payload: ChunkPayload


@dataclass
class SearchHit:
    """One nearest-neighbour result. score = 1 - cosine distance (higher is closer)."""

    score: float
    payload: ChunkPayload


class VectorStore:
    """Upsert / search / reset over the chunk vector collection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        """
        Args:
            conn: Connection opened with ``Database.connect(threaded=True)``,
                schema initialised. Owned by the caller.
        """
        self._conn = conn
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def ensure_collection(self, dimensions: int) -> None:
        """Create the collection with *dimensions* if it does not exist yet.

        Raises:
            StorageFailed: If the collection exists with a different dimensionality.
        """
        await self._run(self._ensure_collection, dimensions)

    async def upsert(self, records: list[VectorRecord]) -> list[int]:
        """Insert all *records* in one transaction. Returns their rowids."""
        if not records:
            return []
        return await self._run(self._upsert, records)

    async def search(self, embedding: list[float], top_k: int = 30) -> list[SearchHit]:
        """Return up to *top_k* hits ordered by cosine distance (closest first)."""
        return await self._run(self._search, embedding, top_k)

    async def delete_document(self, document_id: str) -> int:
        """Remove every vector belonging to *document_id*. Returns rows deleted."""
        return await self._run(self._delete_document, document_id)

    async def reset(self) -> None:
        """Drop the collection and all payloads."""
        await self._run(self._reset)

    def dimensions(self) -> int | None:
        """Dimensionality of the collection, or None if not yet created."""
        row = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (_META_TABLE,)
        ).fetchone()
        if row is None:
            return None
        meta = self._conn.execute(
            f"SELECT dimensions FROM {_META_TABLE} WHERE name = ?", (COLLECTION,)
        ).fetchone()
        return int(meta["dimensions"]) if meta else None

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunk_payloads").fetchone()[0]

    # ------------------------------------------------------------------
    # Worker-thread bodies
    # ------------------------------------------------------------------

    async def _run(self, fn, *args):
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise StorageFailed(f"Vector store error: {exc}") from exc

    def _ensure_collection(self, dimensions: int) -> None:
        if dimensions < 1:
            raise StorageFailed(f"dimensions must be >= 1, got {dimensions}")
        existing = self.dimensions()
        if existing is not None:
            if existing != dimensions:
                raise StorageFailed(
                    f"Collection '{COLLECTION}' has {existing} dimensions; "
                    f"got an embedding with {dimensions}. Run 'cvsift reset' to rebuild."
                )
            return
        self._conn.execute(
            f"CREATE TABLE IF NOT EXISTS {_META_TABLE} "
            "(name TEXT PRIMARY KEY, dimensions INTEGER NOT NULL)"
        )
        self._conn.execute(
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {COLLECTION} "
            f"USING vec0(embedding float[{int(dimensions)}] distance_metric=cosine)"
        )
        self._conn.execute(
            f"INSERT OR REPLACE INTO {_META_TABLE} (name, dimensions) VALUES (?, ?)",
            (COLLECTION, int(dimensions)),
        )
        self._conn.commit()

    def _upsert(self, records: list[VectorRecord]) -> list[int]:
        dims = self.dimensions()
        if dims is None:
            raise StorageFailed("Collection does not exist; call ensure_collection() first.")
        for rec in records:
            if len(rec.embedding) != dims:
                raise StorageFailed(
                    f"Embedding has {len(rec.embedding)} dimensions, collection expects {dims}."
                )

        rowids: list[int] = []
        try:
            for rec in records:
                p = rec.payload
                cur = self._conn.execute(
                    """
                    INSERT INTO chunk_payloads (document_id, source, file_name, chunk_index, text)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (p.document_id, p.source, p.file_name, p.chunk_index, p.text),
                )
                rowid = cur.lastrowid
                self._conn.execute(
                    f"INSERT INTO {COLLECTION}(rowid, embedding) VALUES (?, ?)",
                    (rowid, json.dumps(rec.embedding)),
                )
                rowids.append(rowid)
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return rowids

    def _search(self, embedding: list[float], top_k: int) -> list[SearchHit]:
        if self.dimensions() is None:
            return []
        rows = self._conn.execute(
            f"""
            SELECT v.rowid AS rowid, v.distance AS distance,
                   p.document_id, p.source, p.file_name, p.chunk_index, p.text
            FROM (
                SELECT rowid, distance FROM {COLLECTION}
                WHERE embedding MATCH ? AND k = ?
            ) AS v
            JOIN chunk_payloads AS p ON p.rowid = v.rowid
            ORDER BY v.distance
            """,
            (json.dumps(embedding), int(top_k)),
        ).fetchall()
        return [
            SearchHit(
                score=1.0 - float(r["distance"]),
                payload=ChunkPayload(
                    text=r["text"],
                    source=r["source"],
                    file_name=r["file_name"],
                    chunk_index=r["chunk_index"],
                    document_id=r["document_id"],
                ),
            )
            for r in rows
        ]

    def _delete_document(self, document_id: str) -> int:
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT rowid FROM chunk_payloads WHERE document_id = ?", (document_id,)
            ).fetchall()
        ]
        if not rowids:
            return 0
        placeholders = ",".join("?" * len(rowids))
        try:
            if self.dimensions() is not None:
                self._conn.execute(
                    f"DELETE FROM {COLLECTION} WHERE rowid IN ({placeholders})", rowids
                )
            self._conn.execute(
                f"DELETE FROM chunk_payloads WHERE rowid IN ({placeholders})", rowids
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return len(rowids)

    def _reset(self) -> None:
        self._conn.execute(f"DROP TABLE IF EXISTS {COLLECTION}")
        self._conn.execute(f"DROP TABLE IF EXISTS {_META_TABLE}")
        self._conn.execute("DELETE FROM chunk_payloads")
        self._conn.commit()
