"""Analysis orchestrator: cache check, tiered prompt, gated completion with model fallback.

Pipeline:
  1. Hash the job context; blank context counts as "standard".
  2. Resolve every unique source to its Document and look up the cached
     analysis for (document_id, job_context_hash). Hits are returned as-is.
  3. If everything is cached, return without calling out.
  4. Build one prompt from the uncached sources' chunks, bounded by the tier
     (chunk count, then character budget with a truncation marker).
  5. Complete through the RateGate, walking the provider's fallback models
     while the model is missing. Quota errors stop immediately.
  6. Parse the first balanced JSON object in the answer; an unparseable
     answer degrades to a raw-text summary instead of raising.
  7. Upsert a cache entry for every fresh candidate that maps to a Document.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field

from cvsift.db.models import Document
from cvsift.db.registry import ChecksumRegistry
from cvsift.errors import AnalysisFailed, InvalidInput, ModelUnavailable
from cvsift.rag.llm_client import CompletionClient
from cvsift.rag.providers import Completion, Provider, select_provider
from cvsift.rag.retriever import RankedChunk

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[... context truncated ...]"
DEFAULT_JOB_CONTEXT = "standard"


@dataclass(frozen=True)
class Tier:
    name: str
    max_chunks: int
    max_tokens: int
    max_chars: int


TIERS: dict[str, Tier] = {
    "basic": Tier("basic", max_chunks=5, max_tokens=2000, max_chars=10_000),
    "pro": Tier("pro", max_chunks=15, max_tokens=4000, max_chars=30_000),
}


def resolve_tier(name: str) -> Tier:
    try:
        return TIERS[(name or "basic").strip().lower()]
    except KeyError:
        raise InvalidInput(
            f"Unknown tier '{name}'. Valid tiers: {', '.join(sorted(TIERS))}."
        ) from None


def job_context_hash(job_context: str | None) -> str:
    """sha256 of the job context; blank or missing context hashes as "standard"."""
    text = job_context if job_context and job_context.strip() else DEFAULT_JOB_CONTEXT
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def truncate_context(context: str, max_chars: int) -> str:
    """Cut *context* to exactly *max_chars* characters plus the marker, if longer."""
    if len(context) <= max_chars:
        return context
    return context[:max_chars] + TRUNCATION_MARKER


def build_context(chunks: list[RankedChunk], tier: Tier) -> str:
    """Best ``tier.max_chunks`` chunks by score, labelled, within ``tier.max_chars``."""
    best = sorted(chunks, key=lambda c: c.score, reverse=True)[: tier.max_chunks]
    context = "\n\n".join(f"[{c.source} - chunk {c.chunk_index}]\n{c.text}" for c in best)
    return truncate_context(context, tier.max_chars)


_PROMPT_TEMPLATE = """\
Evaluate each candidate CV below against the job context.

Job context:
{job_context}

Candidates (use these exact source names):
{sources}

Answer with a single JSON object of this shape:
{{"candidates": [{{"source": "<source name>", "score": <0-100>, "suitable": <true|false>, \
"justification": "<one or two sentences>"}}], "summary": "<short overall comparison>"}}

CV excerpts:
{context}"""


def build_prompt(context: str, job_context: str | None, sources: list[str]) -> str:
    job = job_context.strip() if job_context and job_context.strip() else (
        "No specific role given; assess general professional suitability."
    )
    return _PROMPT_TEMPLATE.format(
        job_context=job,
        sources="\n".join(f"- {s}" for s in sources),
        context=context,
    )


# ------------------------------------------------------------------
# Response parsing
# ------------------------------------------------------------------


@dataclass
class StructuredResponse:
    candidates: list[dict] = field(default_factory=list)
    summary: str = ""
    degraded: bool = False


def _balanced_objects(text: str):
    """Yield every top-level ``{...}`` substring, honouring JSON strings and escapes."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end == -1:
            return
        yield text[start : end + 1]
        start = text.find("{", start + 1)


def try_parse_structured_response(raw: str) -> StructuredResponse:
    """Extract ``{candidates, summary}`` from an LLM answer. Never raises.

    The first balanced JSON object that decodes to a dict with a
    ``candidates`` or ``summary`` key wins. Anything else degrades to
    ``summary=raw``, no candidates, ``degraded=True``.
    """
    for blob in _balanced_objects(raw or ""):
        try:
            data = json.loads(blob)
        except ValueError:
            continue
        if not isinstance(data, dict) or not ({"candidates", "summary"} & data.keys()):
            continue
        candidates = data.get("candidates")
        return StructuredResponse(
            candidates=[c for c in candidates if isinstance(c, dict)]
            if isinstance(candidates, list)
            else [],
            summary=str(data.get("summary") or ""),
        )
    return StructuredResponse(summary=raw or "", degraded=True)


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------


@dataclass
class Candidate:
    source: str
    score: float
    suitable: bool
    justification: str
    cached: bool = False

    @classmethod
    def from_dict(cls, data: dict, cached: bool = False) -> Candidate | None:
        source = str(data.get("source") or "").strip()
        if not source:
            return None
        try:
            score = float(data.get("score") or 0)
        except (TypeError, ValueError):
            score = 0.0
        suitable = data.get("suitable")
        if isinstance(suitable, str):
            suitable = suitable.strip().lower() in ("true", "yes", "1")
        return cls(
            source=source,
            score=score,
            suitable=bool(suitable),
            justification=str(data.get("justification") or ""),
            cached=cached,
        )

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "score": self.score,
            "suitable": self.suitable,
            "justification": self.justification,
        }


@dataclass
class AnalysisResult:
    candidates: list[Candidate] = field(default_factory=list)
    summary: str = ""
    model: str | None = None
    degraded: bool = False


class AnalysisOrchestrator:
    """Cache-first, quota-aware candidate analysis."""

    def __init__(self, registry: ChecksumRegistry, completions: CompletionClient) -> None:
        self._registry = registry
        self._completions = completions

    async def analyze(
        self,
        chunks: list[RankedChunk],
        job_context: str | None,
        api_key: str,
        model: str | None = None,
        tier: str = "basic",
    ) -> AnalysisResult:
        """Analyse the sources behind *chunks* against *job_context*.

        Raises:
            InvalidInput: No chunks, unknown tier, or missing / unrecognised key.
            RateLimited: The provider is out of quota (no retry is attempted).
            AnalysisFailed: Any other provider failure, or every model is missing.
        """
        if not chunks:
            raise InvalidInput("No chunks to analyze. Run a query first.")
        plan = resolve_tier(tier)
        provider = select_provider(api_key)
        ctx_hash = job_context_hash(job_context)

        # Cache check, one lookup per unique source in first-appearance order
        cached: list[Candidate] = []
        pending: list[str] = []
        docs: dict[str, Document] = {}
        for chunk in chunks:
            if chunk.source in docs or chunk.source in pending:
                continue
            doc = self._resolve_document(chunk)
            if doc is not None:
                docs[chunk.source] = doc
                entry = self._registry.get_analysis(doc.id, ctx_hash)
                if entry is not None:
                    candidate = Candidate.from_dict(
                        {"source": chunk.source, **entry.report_dict}, cached=True
                    )
                    if candidate is not None:
                        cached.append(candidate)
                        continue
            pending.append(chunk.source)

        pending_docs = {s: docs[s] for s in pending if s in docs}

        if not pending:
            logger.info(f"[analysis] cache hit for all {len(cached)} source(s)")
            return AnalysisResult(
                candidates=cached,
                summary=f"All {len(cached)} candidate(s) served from cache.",
            )

        fresh_chunks = [c for c in chunks if c.source in pending]
        context = build_context(fresh_chunks, plan)
        prompt = build_prompt(context, job_context, pending)

        completion, used_model = await self._complete_with_fallback(
            provider, prompt, model, api_key, plan.max_tokens
        )
        parsed = try_parse_structured_response(completion.text)
        if parsed.degraded:
            logger.warning(
                f"[analysis] {provider.name}/{used_model}: answer was not valid JSON; "
                "returning raw text"
            )

        fresh: list[Candidate] = []
        for raw in parsed.candidates:
            candidate = Candidate.from_dict(raw)
            if candidate is None:
                continue
            fresh.append(candidate)
            doc = self._match_document(candidate.source, pending_docs)
            if doc is None:
                logger.debug(f"[analysis] no document for candidate '{candidate.source}'")
                continue
            self._registry.save_analysis(
                doc.id,
                ctx_hash,
                candidate.score,
                candidate.suitable,
                json.dumps({**candidate.to_dict(), "model": used_model}),
            )

        return AnalysisResult(
            candidates=cached + fresh,
            summary=parsed.summary,
            model=used_model,
            degraded=parsed.degraded,
        )

    async def _complete_with_fallback(
        self,
        provider: Provider,
        prompt: str,
        model: str | None,
        api_key: str,
        max_tokens: int,
    ) -> tuple[Completion, str]:
        chain = provider.model_chain(model)
        for i, candidate_model in enumerate(chain):
            try:
                result = await self._completions.complete(
                    provider, prompt, candidate_model, api_key, max_tokens
                )
            except ModelUnavailable:
                following = chain[i + 1] if i + 1 < len(chain) else None
                if following is None:
                    logger.error(
                        f"[analysis] {provider.name}/{candidate_model} unavailable; "
                        "no fallback models left"
                    )
                else:
                    logger.warning(
                        f"[analysis] {provider.name}/{candidate_model} unavailable; "
                        f"falling back to {following}"
                    )
                continue
            if i > 0:
                logger.info(f"[analysis] {provider.name}: answered by fallback {candidate_model}")
            return result, candidate_model
        raise AnalysisFailed(
            f"No available model for provider '{provider.name}' (tried: {', '.join(chain)})."
        )

    def _resolve_document(self, chunk: RankedChunk) -> Document | None:
        if chunk.document_id:
            doc = self._registry.get_document(chunk.document_id)
            if doc is not None:
                return doc
        return self._registry.get_document_by_location(chunk.source)

    @staticmethod
    def _match_document(source: str, pending: dict[str, Document]) -> Document | None:
        """Map an LLM-echoed source name to one of the documents just analysed.

        Exact location first, then file name. A file name shared by several
        pending documents matches none of them.
        """
        if source in pending:
            return pending[source]
        by_location = [d for d in pending.values() if d.location == source]
        if by_location:
            return by_location[0]
        by_name = [d for d in pending.values() if d.file_name == source]
        if len(by_name) == 1:
            return by_name[0]
        if by_name:
            logger.warning(
                f"[analysis] '{source}' names {len(by_name)} documents; result not cached"
            )
        return None
