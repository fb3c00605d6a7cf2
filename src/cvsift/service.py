"""SiftService: wires the core components behind one async facade.

    async with SiftService.open(load_config()) as sift:
        report = await sift.ingest("cvs/", api_key)
        result = await sift.query("backend engineer", api_key)
        analysis = await sift.analyze(result.chunks, "backend role", api_key)

The registry uses its own connection on the event-loop thread; the vector
store gets a second, thread-enabled connection to the same database file.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from cvsift.config import CvSiftConfig
from cvsift.db.connection import Database
from cvsift.db.models import Source
from cvsift.db.registry import ChecksumRegistry
from cvsift.db.schema import initialize, schema_version
from cvsift.db.vectors import VectorStore
from cvsift.errors import InvalidInput
from cvsift.ingest.extract import extract
from cvsift.ingest.pipeline import BatchReport, IngestionPipeline, IngestOptions, PreviewFile
from cvsift.rag.analysis import AnalysisOrchestrator, AnalysisResult
from cvsift.rag.llm_client import CompletionClient, EmbeddingClient
from cvsift.rag.providers import select_provider
from cvsift.rag.retriever import QueryResult, RankedChunk, RetrievalEngine
from cvsift.rate.burst import BurstGuard
from cvsift.rate.gate import RateGate
from cvsift.rate.quota import QuotaLimits, QuotaTracker, RateState

logger = logging.getLogger(__name__)


@dataclass
class ServiceStatus:
    documents: int = 0
    indexed: int = 0
    sources: int = 0
    analyses: int = 0
    vectors: int = 0
    dimensions: int | None = None
    schema_version: int = 0
    rate: dict[str, RateState] = field(default_factory=dict)


@dataclass
class RemovalReport:
    source: Source
    documents: int
    vectors: int


def build_gate(config: CvSiftConfig, base_dir: Path) -> RateGate:
    """RateGate with the configured limits and a persisted quota snapshot."""
    rl = config.rate_limit
    quota = QuotaTracker(
        {
            "completion": QuotaLimits(rpm=rl.completion.rpm, tpm=rl.completion.tpm),
            "embedding": QuotaLimits(rpm=rl.embedding.rpm, tpm=rl.embedding.tpm),
        },
        state_path=_resolve(base_dir, config.storage.rate_state_path),
    )
    return RateGate(
        BurstGuard(rl.min_interval_ms / 1000.0),
        quota,
        default_retry_seconds=float(rl.default_retry_seconds),
    )


class SiftService:
    """Facade over ingestion, retrieval, analysis and housekeeping."""

    def __init__(
        self,
        config: CvSiftConfig,
        registry_conn: sqlite3.Connection,
        vector_conn: sqlite3.Connection,
        gate: RateGate,
        extractor: Callable[[bytes], str] = extract,
    ) -> None:
        self.config = config
        self._registry_conn = registry_conn
        self._vector_conn = vector_conn
        self.gate = gate
        self.registry = ChecksumRegistry(registry_conn)
        self.vectors = VectorStore(vector_conn)
        embedder = EmbeddingClient(gate)
        self.pipeline = IngestionPipeline(
            self.registry,
            self.vectors,
            embedder,
            extractor=extractor,
            max_bytes=config.ingest.max_download_mb * 1024 * 1024,
        )
        self.retriever = RetrievalEngine(embedder, self.vectors)
        self.analyzer = AnalysisOrchestrator(self.registry, CompletionClient(gate))

    @classmethod
    def open(
        cls,
        config: CvSiftConfig,
        *,
        base_dir: Path | None = None,
        gate: RateGate | None = None,
        extractor: Callable[[bytes], str] = extract,
    ) -> SiftService:
        """Open (and migrate) the database under *base_dir* and wire the service.

        Relative storage paths are resolved against *base_dir* (default: CWD).
        """
        root = base_dir if base_dir is not None else Path.cwd()
        db = Database(_resolve(root, config.storage.db_path))
        registry_conn = db.connect()
        initialize(registry_conn)
        vector_conn = db.connect(threaded=True)
        return cls(
            config,
            registry_conn,
            vector_conn,
            gate if gate is not None else build_gate(config, root),
            extractor=extractor,
        )

    async def __aenter__(self) -> SiftService:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        self._vector_conn.close()
        self._registry_conn.close()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def preview(self, location: str) -> list[PreviewFile]:
        return await self.pipeline.preview(location)

    async def ingest(
        self,
        location: str,
        api_key: str,
        *,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> BatchReport:
        options = IngestOptions(
            api_key=api_key,
            chunk_size=chunk_size if chunk_size is not None else self.config.ingest.chunk_size,
            overlap=overlap if overlap is not None else self.config.ingest.overlap,
        )
        return await self.pipeline.ingest_location(location, options)

    async def query(self, text: str, api_key: str, top_k: int | None = None) -> QueryResult:
        return await self.retriever.query(
            text, api_key, top_k=top_k if top_k is not None else self.config.retrieval.top_k
        )

    async def analyze(
        self,
        chunks: list[RankedChunk],
        job_context: str | None,
        api_key: str,
        *,
        model: str | None = None,
        tier: str | None = None,
    ) -> AnalysisResult:
        return await self.analyzer.analyze(
            chunks,
            job_context,
            api_key,
            model=model or self.config.analysis.model,
            tier=tier or self.config.analysis.tier,
        )

    async def reset(self) -> int:
        """Drop every vector and clear all indexed flags. Returns documents reset.

        Sources, documents and cached analyses are kept.
        """
        await self.vectors.reset()
        cleared = self.registry.clear_indexed()
        logger.info(f"[service] reset: vectors dropped, {cleared} document(s) marked unindexed")
        return cleared

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def status(self) -> ServiceStatus:
        docs = self.registry.list_documents()
        return ServiceStatus(
            documents=len(docs),
            indexed=sum(1 for d in docs if d.indexed),
            sources=len(self.registry.list_sources()),
            analyses=self.registry.count_analyses(),
            vectors=self.vectors.count(),
            dimensions=self.vectors.dimensions(),
            rate=self.gate.quota.snapshot(),
            schema_version=schema_version(self._registry_conn),
        )

    def find_source(self, ref: str) -> Source | None:
        """Look up a Source by id, unique id prefix, or origin value."""
        ref = ref.strip()
        if not ref:
            return None
        exact = self.registry.get_source(ref)
        if exact is not None:
            return exact
        sources = self.registry.list_sources()
        values = {ref, str(Path(ref).expanduser().resolve())}
        by_value = [s for s in sources if s.value in values]
        if by_value:
            return by_value[0]
        by_prefix = [s for s in sources if s.id.startswith(ref)]
        return by_prefix[0] if len(by_prefix) == 1 else None

    async def remove_source(self, source_id: str) -> RemovalReport:
        """Delete a Source, its Documents, their cached analyses and their vectors.

        Raises:
            InvalidInput: If no Source has *source_id*.
        """
        source = self.registry.get_source(source_id)
        if source is None:
            raise InvalidInput(f"Unknown source '{source_id}'.")
        docs = self.registry.list_documents(source_id)
        removed = 0
        for doc in docs:
            removed += await self.vectors.delete_document(doc.id)
        self.registry.delete_source(source_id)
        logger.info(
            f"[service] removed source {source.value}: {len(docs)} document(s), "
            f"{removed} vector(s)"
        )
        return RemovalReport(source=source, documents=len(docs), vectors=removed)

    @staticmethod
    def list_models(api_key: str) -> tuple[str, list[str]]:
        """Provider name and its known chat models. No network call."""
        provider = select_provider(api_key)
        return provider.name, provider.list_models()


def _resolve(base_dir: Path, path: str) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() else base_dir / p
