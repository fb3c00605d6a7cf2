"""IngestionPipeline: checksum dedup → extract → chunk → embed → upsert → mark indexed.

Identity is the sha256 of the raw bytes. A document is skipped only once it
is indexed, so a failed ingest can simply be retried. Vectors are always
written before the indexed flag is set; a crash in between leaves the
document unindexed and the next run replaces its stale vectors.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from cvsift.db.models import Document, Source
from cvsift.db.registry import ChecksumRegistry
from cvsift.db.vectors import ChunkPayload, VectorRecord, VectorStore
from cvsift.errors import (
    CvSiftError,
    EmbeddingFailed,
    EmptyDocument,
    ExtractionFailed,
    InvalidInput,
    RateLimited,
)
from cvsift.ingest.chunker import Chunk, SentenceChunker
from cvsift.ingest.extract import extract
from cvsift.ingest.loader import DEFAULT_MAX_BYTES, RawDocument, load_location
from cvsift.rag.llm_client import EmbeddingClient

logger = logging.getLogger(__name__)


@dataclass
class IngestOptions:
    api_key: str
    chunk_size: int = 512
    overlap: int = 50


@dataclass
class IngestResult:
    processed: bool
    document_id: str


@dataclass
class BatchReport:
    """Outcome of ingesting every document behind one location."""

    source_id: str = ""
    processed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, CvSiftError]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.processed) + len(self.skipped) + len(self.failed)


@dataclass
class PreviewFile:
    id: str
    file_name: str
    location: str
    checksum: str
    size: int
    indexed: bool


def checksum_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class IngestionPipeline:
    """Turn raw documents into indexed, searchable chunk vectors."""

    def __init__(
        self,
        registry: ChecksumRegistry,
        vector_store: VectorStore,
        embedder: EmbeddingClient,
        extractor: Callable[[bytes], str] = extract,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._registry = registry
        self._vectors = vector_store
        self._embedder = embedder
        self._extractor = extractor
        self._max_bytes = max_bytes
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    async def ingest(
        self, document: RawDocument, source: Source, options: IngestOptions
    ) -> IngestResult:
        """Ingest one resolved document.

        Returns ``processed=False`` when identical bytes are already indexed.

        Raises:
            InvalidInput: Missing API key or invalid chunking options.
            ExtractionFailed: The PDF could not be read.
            EmptyDocument: The text produced zero chunks.
            EmbeddingFailed: The embedding provider failed.
            RateLimited: The embedding provider is out of quota.
            StorageFailed: The vector store rejected the write.
        """
        _require_key(options)
        chunker = _make_chunker(options)
        checksum = checksum_of(document.data)

        lock = self._locks.setdefault(checksum, asyncio.Lock())
        self._waiters[checksum] = self._waiters.get(checksum, 0) + 1
        try:
            async with lock:
                return await self._ingest_locked(document, source, chunker, checksum, options)
        finally:
            self._waiters[checksum] -= 1
            if not self._waiters[checksum]:
                del self._waiters[checksum]
                del self._locks[checksum]

    async def _ingest_locked(
        self,
        document: RawDocument,
        source: Source,
        chunker: SentenceChunker,
        checksum: str,
        options: IngestOptions,
    ) -> IngestResult:
        existing = self._registry.get_document_by_checksum(checksum)
        if existing is not None and existing.indexed:
            logger.info(
                f"[ingest] skip {document.location}: already indexed as {existing.id}"
            )
            return IngestResult(processed=False, document_id=existing.id)

        self._registry.add_source(source)
        doc = existing or self._registry.add_document(
            Document(
                id=str(uuid.uuid4()),
                source_id=source.id,
                file_name=document.file_name,
                location=document.location,
                checksum=checksum,
            )
        )

        text = await self._extract(document)
        chunks = chunker.chunk(text, source=doc.location, file_name=doc.file_name)
        if not chunks:
            raise EmptyDocument(
                f"'{document.file_name}' produced no text to index.",
                location=document.location,
            )

        embeddings = await self._embed_all(chunks, options.api_key, document.location)

        await self._vectors.ensure_collection(len(embeddings[0]))
        await self._vectors.delete_document(doc.id)
        await self._vectors.upsert(
            [
                VectorRecord(
                    embedding=vector,
                    payload=ChunkPayload(
                        text=chunk.text,
                        source=chunk.source,
                        file_name=chunk.file_name,
                        chunk_index=chunk.chunk_index,
                        document_id=doc.id,
                    ),
                )
                for chunk, vector in zip(chunks, embeddings)
            ]
        )
        self._registry.mark_indexed(doc.id, text)
        logger.info(f"[ingest] indexed {doc.location}: {len(chunks)} chunk(s)")
        return IngestResult(processed=True, document_id=doc.id)

    async def _extract(self, document: RawDocument) -> str:
        try:
            return await asyncio.to_thread(self._extractor, document.data)
        except ExtractionFailed as exc:
            exc.location = exc.location or document.location
            raise
        except Exception as exc:
            raise ExtractionFailed(
                f"Could not read '{document.file_name}': {exc}", location=document.location
            ) from exc

    async def _embed_all(
        self, chunks: list[Chunk], api_key: str, location: str
    ) -> list[list[float]]:
        """Embed every chunk concurrently; the first failure cancels the rest."""
        tasks = [
            asyncio.ensure_future(self._embedder.embed(chunk.text, api_key)) for chunk in chunks
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if isinstance(exc, EmbeddingFailed) and not exc.location:
                exc.location = location
            raise

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    async def ingest_location(self, location: str, options: IngestOptions) -> BatchReport:
        """Resolve *location* and ingest every document found there.

        Items the loader could not read and documents whose ingest raised a
        CvSiftError are recorded in ``failed``; the batch continues. Once the
        provider reports RateLimited, the remaining documents are recorded as
        failed with the same error.
        """
        _require_key(options)
        _make_chunker(options)
        loaded = await load_location(location, self._max_bytes)
        source = loaded.source
        self._registry.add_source(source)
        report = BatchReport(source_id=source.id, failed=list(loaded.failed))

        limited: RateLimited | None = None
        for raw in loaded.documents:
            if limited is not None:
                report.failed.append((raw.location, limited))
                continue
            try:
                result = await self.ingest(raw, source, options)
            except RateLimited as exc:
                logger.error(f"[ingest] {raw.location}: {exc}")
                limited = exc
                report.failed.append((raw.location, exc))
                continue
            except CvSiftError as exc:
                logger.warning(f"[ingest] {raw.location} failed: {exc}")
                report.failed.append((raw.location, exc))
                continue
            if result.processed:
                report.processed.append(raw.location)
            else:
                report.skipped.append(raw.location)

        logger.info(
            f"[ingest] {location}: {len(report.processed)} processed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    async def preview(self, location: str) -> list[PreviewFile]:
        """Register the Source and Documents behind *location* without external calls.

        Unreadable items are logged and left out.
        """
        loaded = await load_location(location, self._max_bytes)
        for item, exc in loaded.failed:
            logger.warning(f"[ingest] preview skipped {item}: {exc}")
        source, documents = loaded.source, loaded.documents
        self._registry.add_source(source)
        files: list[PreviewFile] = []
        for raw in documents:
            checksum = checksum_of(raw.data)
            doc = self._registry.add_document(
                Document(
                    id=str(uuid.uuid4()),
                    source_id=source.id,
                    file_name=raw.file_name,
                    location=raw.location,
                    checksum=checksum,
                )
            )
            files.append(
                PreviewFile(
                    id=doc.id,
                    file_name=raw.file_name,
                    location=raw.location,
                    checksum=checksum,
                    size=len(raw.data),
                    indexed=doc.indexed,
                )
            )
        return files


def _require_key(options: IngestOptions) -> None:
    if not options.api_key or not options.api_key.strip():
        raise InvalidInput("An API key is required for ingestion.")


def _make_chunker(options: IngestOptions) -> SentenceChunker:
    try:
        return SentenceChunker(chunk_size=options.chunk_size, overlap=options.overlap)
    except ValueError as exc:
        raise InvalidInput(f"Invalid chunking options: {exc}") from exc
