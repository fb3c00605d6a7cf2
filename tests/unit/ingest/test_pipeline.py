"""Tests for IngestionPipeline: dedup, failure recovery and batch behaviour."""

from __future__ import annotations

import asyncio

import pytest

from cvsift.db.models import Source
from cvsift.db.registry import ChecksumRegistry
from cvsift.db.vectors import VectorStore
from cvsift.errors import (
    EmbeddingFailed,
    EmptyDocument,
    ExtractionFailed,
    IngestError,
    InvalidInput,
    RateLimited,
)
from cvsift.ingest.loader import RawDocument
from cvsift.ingest.pipeline import IngestionPipeline, IngestOptions, checksum_of

KEY = "AIza-test"
TEXT = "Alice builds APIs. Alice ships Python."


class FakeEmbedder:
    """Records calls; raises ``error`` when set."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.error: Exception | None = None

    async def embed(self, text: str, api_key: str) -> list[float]:
        self.calls.append(text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return [1.0, 0.5]


def _decode(data: bytes) -> str:
    return data.decode("utf-8")


@pytest.fixture
def registry(tmp_db):
    return ChecksumRegistry(tmp_db)


@pytest.fixture
def store(vector_conn):
    return VectorStore(vector_conn)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def pipeline(registry, store, embedder):
    return IngestionPipeline(registry, store, embedder, extractor=_decode)


SOURCE = Source.for_origin("file", "/cvs")
# 5 tokens -> 20 chars per chunk: one sentence each
TWO_CHUNKS = IngestOptions(api_key=KEY, chunk_size=5, overlap=0)


def _raw(name: str = "alice.pdf", text: str = TEXT) -> RawDocument:
    return RawDocument(file_name=name, location=f"/cvs/{name}", data=text.encode("utf-8"))


# ---------------------------------------------------------------------------
# Single document
# ---------------------------------------------------------------------------


def test_checksum_is_sha256():
    assert checksum_of(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.mark.asyncio
async def test_ingest_indexes_document(pipeline, registry, store, embedder):
    result = await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)

    assert result.processed is True
    doc = registry.get_document(result.document_id)
    assert doc.indexed is True
    assert doc.text_content == TEXT
    assert doc.source_id == SOURCE.id
    assert store.count() == 2
    assert store.dimensions() == 2
    assert sorted(embedder.calls) == ["Alice builds APIs.", "Alice ships Python."]


@pytest.mark.asyncio
async def test_same_bytes_are_skipped(pipeline, store, embedder):
    first = await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)
    second = await pipeline.ingest(_raw("copy-of-alice.pdf"), SOURCE, TWO_CHUNKS)

    assert second.processed is False
    assert second.document_id == first.document_id
    assert len(embedder.calls) == 2
    assert store.count() == 2


@pytest.mark.asyncio
async def test_payload_source_is_document_location(pipeline, store):
    await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)
    hits = await store.search([1.0, 0.5], top_k=5)
    assert {h.payload.source for h in hits} == {"/cvs/alice.pdf"}
    assert {h.payload.file_name for h in hits} == {"alice.pdf"}
    assert sorted(h.payload.chunk_index for h in hits) == [0, 1]


@pytest.mark.asyncio
async def test_empty_document(pipeline, registry, store, embedder):
    with pytest.raises(EmptyDocument) as excinfo:
        await pipeline.ingest(_raw(text="   "), SOURCE, TWO_CHUNKS)

    assert excinfo.value.location == "/cvs/alice.pdf"
    assert embedder.calls == []
    assert store.count() == 0
    doc = registry.get_document_by_checksum(checksum_of(b"   "))
    assert doc is not None and doc.indexed is False


@pytest.mark.asyncio
async def test_embedding_failure_leaves_document_retryable(pipeline, registry, store, embedder):
    embedder.error = EmbeddingFailed("provider exploded")
    with pytest.raises(EmbeddingFailed) as excinfo:
        await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)

    assert excinfo.value.location == "/cvs/alice.pdf"
    doc = registry.get_document_by_checksum(checksum_of(TEXT.encode("utf-8")))
    assert doc.indexed is False
    assert store.count() == 0

    embedder.error = None
    retry = await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)

    assert retry.processed is True
    assert retry.document_id == doc.id
    assert store.count() == 2


@pytest.mark.asyncio
async def test_rate_limited_propagates_unchanged(pipeline, registry, embedder):
    embedder.error = RateLimited(42, provider="gemini")
    with pytest.raises(RateLimited) as excinfo:
        await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)
    assert excinfo.value.retry_after == 42
    assert all(not d.indexed for d in registry.list_documents())


@pytest.mark.asyncio
async def test_reingest_after_clear_replaces_vectors(pipeline, registry, store):
    await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)
    registry.clear_indexed()

    again = await pipeline.ingest(_raw(), SOURCE, TWO_CHUNKS)

    assert again.processed is True
    assert store.count() == 2


@pytest.mark.asyncio
async def test_concurrent_ingest_of_same_bytes(pipeline, store, embedder):
    results = await asyncio.gather(
        pipeline.ingest(_raw("a.pdf"), SOURCE, TWO_CHUNKS),
        pipeline.ingest(_raw("b.pdf"), SOURCE, TWO_CHUNKS),
    )

    assert sorted(r.processed for r in results) == [False, True]
    assert results[0].document_id == results[1].document_id
    assert len(embedder.calls) == 2
    assert store.count() == 2


@pytest.mark.asyncio
async def test_missing_key_rejected_before_any_call(pipeline, embedder, registry):
    with pytest.raises(InvalidInput):
        await pipeline.ingest(_raw(), SOURCE, IngestOptions(api_key="  "))
    assert embedder.calls == []
    assert registry.list_documents() == []


@pytest.mark.asyncio
async def test_invalid_chunking_options(pipeline):
    with pytest.raises(InvalidInput, match="chunking"):
        await pipeline.ingest(_raw(), SOURCE, IngestOptions(api_key=KEY, chunk_size=10, overlap=10))


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


def _write(path, text: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8"))
    return path


@pytest.mark.asyncio
async def test_batch_continues_after_failure(pipeline, tmp_path):
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    _write(root / "b.pdf", "   ")
    _write(root / "c.pdf", "Cy runs kubernetes.")

    report = await pipeline.ingest_location(str(root), IngestOptions(api_key=KEY))

    assert [p.rsplit("/", 1)[-1] for p in report.processed] == ["a.pdf", "c.pdf"]
    assert len(report.failed) == 1
    location, error = report.failed[0]
    assert location.endswith("b.pdf")
    assert isinstance(error, EmptyDocument)
    assert report.total == 3


@pytest.mark.asyncio
async def test_batch_second_run_skips_everything(pipeline, tmp_path):
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    _write(root / "c.pdf", "Cy runs kubernetes.")
    options = IngestOptions(api_key=KEY)

    await pipeline.ingest_location(str(root), options)
    report = await pipeline.ingest_location(str(root), options)

    assert report.processed == []
    assert len(report.skipped) == 2


@pytest.mark.asyncio
async def test_batch_stops_calling_out_once_rate_limited(pipeline, embedder, tmp_path):
    root = tmp_path / "cvs"
    for name in ("a", "b", "c"):
        _write(root / f"{name}.pdf", f"Candidate {name} is great.")
    embedder.error = RateLimited(60, provider="gemini")

    report = await pipeline.ingest_location(str(root), IngestOptions(api_key=KEY))

    assert len(embedder.calls) == 1
    assert report.processed == []
    assert len(report.failed) == 3
    assert all(err is embedder.error for _, err in report.failed)


@pytest.mark.asyncio
async def test_preview_registers_without_calling_out(pipeline, registry, embedder, tmp_path):
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    _write(root / "dup.pdf", "Ada writes compilers.")

    files = await pipeline.preview(str(root))

    assert [f.file_name for f in files] == ["a.pdf", "dup.pdf"]
    assert files[0].id == files[1].id
    assert files[0].size == len("Ada writes compilers.")
    assert not any(f.indexed for f in files)
    assert embedder.calls == []
    assert len(registry.list_documents()) == 1
    assert len(registry.list_sources()) == 1


@pytest.mark.asyncio
async def test_batch_survives_corrupt_archive(pipeline, tmp_path):
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    (root / "broken.zip").write_bytes(b"PK not really")

    report = await pipeline.ingest_location(str(root), IngestOptions(api_key=KEY))

    assert [p.rsplit("/", 1)[-1] for p in report.processed] == ["a.pdf"]
    assert [loc.rsplit("/", 1)[-1] for loc, _ in report.failed] == ["broken.zip"]
    assert isinstance(report.failed[0][1], IngestError)


@pytest.mark.asyncio
async def test_batch_survives_oversized_file(registry, store, embedder, tmp_path):
    pipeline = IngestionPipeline(registry, store, embedder, extractor=_decode, max_bytes=64)
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    _write(root / "big.pdf", "x" * 100)

    report = await pipeline.ingest_location(str(root), IngestOptions(api_key=KEY))

    assert [p.rsplit("/", 1)[-1] for p in report.processed] == ["a.pdf"]
    location, error = report.failed[0]
    assert location.endswith("big.pdf")
    assert isinstance(error, InvalidInput)
    assert "64 byte limit" in str(error)


@pytest.mark.asyncio
async def test_batch_survives_extractor_crash(registry, store, embedder, tmp_path):
    def fragile(data: bytes) -> str:
        if data.startswith(b"%BAD"):
            raise IndexError("list index out of range")
        return data.decode("utf-8")

    pipeline = IngestionPipeline(registry, store, embedder, extractor=fragile)
    root = tmp_path / "cvs"
    _write(root / "a.pdf", "Ada writes compilers.")
    _write(root / "b.pdf", "%BAD pdf")

    report = await pipeline.ingest_location(str(root), IngestOptions(api_key=KEY))

    assert [p.rsplit("/", 1)[-1] for p in report.processed] == ["a.pdf"]
    location, error = report.failed[0]
    assert location.endswith("b.pdf")
    assert isinstance(error, ExtractionFailed)
    assert error.location == location
    assert isinstance(error.__cause__, IndexError)


@pytest.mark.asyncio
async def test_checksum_locks_are_released(pipeline, embedder):
    await asyncio.gather(
        pipeline.ingest(_raw("a.pdf"), SOURCE, TWO_CHUNKS),
        pipeline.ingest(_raw("b.pdf"), SOURCE, TWO_CHUNKS),
    )
    embedder.error = EmbeddingFailed("down")
    with pytest.raises(EmbeddingFailed):
        await pipeline.ingest(_raw("c.pdf", "Cy runs kubernetes."), SOURCE, TWO_CHUNKS)

    assert pipeline._locks == {}
    assert pipeline._waiters == {}
