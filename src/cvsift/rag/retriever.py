"""Dense retriever: embed the query, search the vector store, rank sources.

Per-source ranking:
  total_score    = sum of chunk scores (score = 1 - cosine distance)
  average_score  = total_score / matched_chunks
Sources are ordered by average_score, best first. The sort is stable, so
ties keep the order in which each source first appeared in the search hits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cvsift.db.vectors import SearchHit, VectorStore
from cvsift.errors import InvalidInput, InvalidQuery
from cvsift.rag.llm_client import EmbeddingClient

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 30


@dataclass
class RankedChunk:
    """A retrieved chunk with its similarity score."""

    score: float
    text: str
    source: str
    file_name: str
    chunk_index: int
    document_id: str = ""

    @classmethod
    def from_hit(cls, hit: SearchHit) -> RankedChunk:
        p = hit.payload
        return cls(
            score=hit.score,
            text=p.text,
            source=p.source,
            file_name=p.file_name,
            chunk_index=p.chunk_index,
            document_id=p.document_id,
        )


@dataclass
class RankedSource:
    source: str
    file_name: str
    total_score: float = 0.0
    matched_chunks: int = 0

    @property
    def average_score(self) -> float:
        return self.total_score / self.matched_chunks if self.matched_chunks else 0.0


@dataclass
class QueryResult:
    chunks: list[RankedChunk] = field(default_factory=list)
    sources: list[RankedSource] = field(default_factory=list)


def aggregate_by_source(chunks: list[RankedChunk]) -> list[RankedSource]:
    """Group *chunks* by source and rank the groups by average score."""
    groups: dict[str, RankedSource] = {}
    for chunk in chunks:
        group = groups.get(chunk.source)
        if group is None:
            group = groups[chunk.source] = RankedSource(
                source=chunk.source, file_name=chunk.file_name
            )
        group.total_score += chunk.score
        group.matched_chunks += 1
    # dicts keep insertion order; sorted() is stable
    return sorted(groups.values(), key=lambda s: s.average_score, reverse=True)


class RetrievalEngine:
    def __init__(self, embedder: EmbeddingClient, vector_store: VectorStore) -> None:
        self._embedder = embedder
        self._vectors = vector_store

    async def query(self, text: str, api_key: str, top_k: int = DEFAULT_TOP_K) -> QueryResult:
        """Return the *top_k* closest chunks to *text* and their ranked sources.

        Raises:
            InvalidQuery: *text* is empty or whitespace-only.
            InvalidInput: Missing API key or non-positive *top_k*.
            RateLimited: The embedding provider is out of quota.
            EmbeddingFailed: The query could not be embedded.
        """
        if not text or not text.strip():
            raise InvalidQuery("Query text must not be empty.")
        if not api_key or not api_key.strip():
            raise InvalidInput("An API key is required for queries.")
        if top_k < 1:
            raise InvalidInput("top_k must be >= 1.")

        vector = await self._embedder.embed(text.strip(), api_key)
        hits = await self._vectors.search(vector, top_k=top_k)
        chunks = [RankedChunk.from_hit(h) for h in hits]
        sources = aggregate_by_source(chunks)
        logger.debug(
            f"[retrieve] {len(chunks)} chunk(s) across {len(sources)} source(s) for top_k={top_k}"
        )
        return QueryResult(chunks=chunks, sources=sources)
