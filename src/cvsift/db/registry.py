"""ChecksumRegistry: content-addressed store of sources, documents and analyses.

Documents are identified by the sha256 of their raw bytes; analyses are keyed
by (document_id, job_context_hash) and overwritten on re-analysis.
Vectors are not stored here; see cvsift.db.vectors.VectorStore.
"""

from __future__ import annotations

import sqlite3
import uuid

from cvsift.db.models import AnalysisCacheEntry, Document, Source

_DOC_COLUMNS = "id, source_id, file_name, location, checksum, text_content, is_indexed"
_ANALYSIS_COLUMNS = (
    "id, document_id, job_context_hash, suitability_score, is_suitable, report, created_at"
)


class ChecksumRegistry:
    """Data access layer for sources, documents and cached analyses.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see cvsift.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> Source:
        """Insert *source* unless a source with the same id already exists.

        Sources are immutable once created, so an existing row is left untouched.

        Returns:
            The stored Source (with created_at populated).
        """
        self._conn.execute(
            "INSERT OR IGNORE INTO sources (id, kind, value) VALUES (?, ?, ?)",
            (source.id, source.kind, source.value),
        )
        self._conn.commit()
        return self.get_source(source.id) or source

    def get_source(self, source_id: str) -> Source | None:
        row = self._conn.execute(
            "SELECT id, kind, value, created_at FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self) -> list[Source]:
        """Return all sources, newest first."""
        rows = self._conn.execute(
            "SELECT id, kind, value, created_at FROM sources ORDER BY created_at DESC, id"
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    def delete_source(self, source_id: str) -> None:
        """Delete a source; documents and their analyses cascade.

        Vectors are not touched; callers must purge them from the VectorStore.
        """
        self._conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, doc: Document) -> Document:
        """Register *doc* unless a document with the same checksum exists.

        Identity is the checksum: re-discovering the same bytes under a new
        name or location returns the existing row unchanged.

        Returns:
            The stored Document for ``doc.checksum``.
        """
        self._conn.execute(
            """
            INSERT OR IGNORE INTO documents
                (id, source_id, file_name, location, checksum, text_content, is_indexed)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc.id,
                doc.source_id,
                doc.file_name,
                doc.location,
                doc.checksum,
                doc.text_content,
                int(doc.indexed),
            ),
        )
        self._conn.commit()
        return self.get_document_by_checksum(doc.checksum) or doc

    def get_document(self, document_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_checksum(self, checksum: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE checksum = ?", (checksum,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_location(self, location: str) -> Document | None:
        """Return the document registered at exactly *location*, or None."""
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE location = ? LIMIT 1",
            (location,),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, source_id: str | None = None) -> list[Document]:
        """Return all documents, or those discovered through *source_id*."""
        if source_id is None:
            rows = self._conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents ORDER BY file_name, id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents WHERE source_id = ? ORDER BY file_name, id",
                (source_id,),
            ).fetchall()
        return [_row_to_document(r) for r in rows]

    def mark_indexed(self, document_id: str, text_content: str) -> None:
        """Persist the extracted text and flag the document as indexed."""
        self._conn.execute(
            "UPDATE documents SET text_content = ?, is_indexed = 1 WHERE id = ?",
            (text_content, document_id),
        )
        self._conn.commit()

    def clear_indexed(self) -> int:
        """Reset every document's indexed flag. Returns the number of rows changed."""
        cur = self._conn.execute("UPDATE documents SET is_indexed = 0 WHERE is_indexed = 1")
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Analysis cache
    # ------------------------------------------------------------------

    def save_analysis(
        self,
        document_id: str,
        job_context_hash: str,
        score: float,
        suitable: bool,
        report: str,
    ) -> AnalysisCacheEntry:
        """Upsert the analysis for (document_id, job_context_hash).

        Replaces any previous entry for the pair and resets created_at.
        """
        self._conn.execute(
            """
            INSERT INTO analysis_results
                (id, document_id, job_context_hash, suitability_score, is_suitable, report)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(document_id, job_context_hash) DO UPDATE SET
                suitability_score = excluded.suitability_score,
                is_suitable = excluded.is_suitable,
                report = excluded.report,
                created_at = datetime('now')
            """,
            (str(uuid.uuid4()), document_id, job_context_hash, float(score), int(suitable), report),
        )
        self._conn.commit()
        entry = self.get_analysis(document_id, job_context_hash)
        if entry is None:
            raise sqlite3.DatabaseError(
                f"analysis for document {document_id} was not persisted"
            )
        return entry

    def get_analysis(self, document_id: str, job_context_hash: str) -> AnalysisCacheEntry | None:
        row = self._conn.execute(
            f"""
            SELECT {_ANALYSIS_COLUMNS} FROM analysis_results
            WHERE document_id = ? AND job_context_hash = ?
            """,
            (document_id, job_context_hash),
        ).fetchone()
        return _row_to_analysis(row) if row else None

    def count_analyses(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM analysis_results").fetchone()[0]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        kind=row["kind"],
        value=row["value"],
        created_at=row["created_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        source_id=row["source_id"],
        file_name=row["file_name"],
        location=row["location"],
        checksum=row["checksum"],
        text_content=row["text_content"],
        indexed=bool(row["is_indexed"]),
    )


def _row_to_analysis(row: sqlite3.Row) -> AnalysisCacheEntry:
    return AnalysisCacheEntry(
        id=row["id"],
        document_id=row["document_id"],
        job_context_hash=row["job_context_hash"],
        suitability_score=row["suitability_score"],
        suitable=bool(row["is_suitable"]),
        report=row["report"],
        created_at=row["created_at"],
    )
