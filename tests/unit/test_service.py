"""End-to-end tests for SiftService with the LLM provider mocked out."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from cvsift.config import CvSiftConfig
from cvsift.errors import InvalidInput, InvalidQuery
from cvsift.rate.burst import BurstGuard
from cvsift.rate.gate import RateGate
from cvsift.rate.quota import QuotaLimits, QuotaTracker
from cvsift.service import SiftService, build_gate

KEY = "AIza-test"
RESUME_TEXT = "Alice builds APIs. Alice ships Python."


def _extract(data: bytes) -> str:
    return RESUME_TEXT


def _embedding_response(*args, **kwargs):
    return SimpleNamespace(data=[{"embedding": [1.0, 0.0]}])


def _completion_response(payload: dict):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps(payload)))],
        usage=SimpleNamespace(total_tokens=150),
    )


ANSWER = {
    "candidates": [
        {"source": "alice.pdf", "score": 88, "suitable": True, "justification": "Strong Python"}
    ],
    "summary": "Alice is a strong match.",
}


@pytest.fixture
def service(tmp_path):
    gate = RateGate(BurstGuard(0), QuotaTracker())
    sift = SiftService.open(CvSiftConfig(), base_dir=tmp_path, gate=gate, extractor=_extract)
    yield sift
    sift.close()


@pytest.fixture
def resumes(tmp_path):
    original = tmp_path / "cvs" / "alice.pdf"
    original.parent.mkdir()
    original.write_bytes(b"%PDF alice")
    copy = tmp_path / "inbox" / "alice-copy.pdf"
    copy.parent.mkdir()
    copy.write_bytes(b"%PDF alice")
    return original, copy


@pytest.fixture
def mocked_llm():
    embed = AsyncMock(side_effect=_embedding_response)
    complete = AsyncMock(return_value=_completion_response(ANSWER))
    with patch("litellm.aembedding", new=embed), patch("litellm.acompletion", new=complete):
        yield SimpleNamespace(embed=embed, complete=complete)


# ---------------------------------------------------------------------------
# Full flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ingest_query_analyze_flow(service, resumes, mocked_llm):
    original, copy = resumes

    report = await service.ingest(str(original), KEY, chunk_size=5, overlap=0)
    assert report.processed == [str(original.resolve())]
    assert mocked_llm.embed.await_count == 2

    dup = await service.ingest(str(copy), KEY, chunk_size=5, overlap=0)
    assert dup.processed == []
    assert len(dup.skipped) == 1
    assert mocked_llm.embed.await_count == 2

    result = await service.query("python backend engineer", KEY)
    assert len(result.chunks) == 2
    assert len(result.sources) == 1
    assert result.sources[0].file_name == "alice.pdf"
    assert result.sources[0].matched_chunks == 2

    analysis = await service.analyze(result.chunks, "Senior Python role", KEY)
    assert [c.source for c in analysis.candidates] == ["alice.pdf"]
    assert analysis.candidates[0].score == 88
    assert analysis.model == "gemini-1.5-flash"
    assert service.registry.count_analyses() == 1

    again = await service.analyze(result.chunks, "Senior Python role", KEY)
    assert mocked_llm.complete.await_count == 1
    assert again.candidates[0].cached is True
    assert again.candidates[0].source == "alice.pdf"


@pytest.mark.asyncio
async def test_usage_and_status(service, resumes, mocked_llm):
    original, copy = resumes
    await service.ingest(str(original), KEY, chunk_size=5, overlap=0)
    await service.ingest(str(copy), KEY, chunk_size=5, overlap=0)
    result = await service.query("python", KEY)
    await service.analyze(result.chunks, None, KEY)

    status = service.status()

    assert status.documents == 1
    assert status.indexed == 1
    assert status.sources == 2
    assert status.analyses == 1
    assert status.vectors == 2
    assert status.dimensions == 2
    assert status.schema_version == 1
    assert status.rate["gemini/completion"].total_tokens == 150
    assert status.rate["gemini/embedding"].requests_this_window == 3


@pytest.mark.asyncio
async def test_empty_query_makes_no_call(service, mocked_llm):
    with pytest.raises(InvalidQuery):
        await service.query("   ", KEY)
    mocked_llm.embed.assert_not_awaited()


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reset_keeps_registry_and_allows_reingest(service, resumes, mocked_llm):
    original, _ = resumes
    await service.ingest(str(original), KEY, chunk_size=5, overlap=0)

    cleared = await service.reset()

    assert cleared == 1
    status = service.status()
    assert (status.documents, status.indexed, status.vectors, status.dimensions) == (1, 0, 0, None)

    report = await service.ingest(str(original), KEY, chunk_size=5, overlap=0)
    assert len(report.processed) == 1
    assert service.status().vectors == 2


@pytest.mark.asyncio
async def test_remove_source_purges_documents_and_vectors(service, resumes, mocked_llm):
    original, _ = resumes
    await service.ingest(str(original), KEY, chunk_size=5, overlap=0)
    result = await service.query("python", KEY)
    await service.analyze(result.chunks, "role", KEY)

    source = service.find_source(str(original))
    assert source is not None
    assert service.find_source(source.id[:12]).id == source.id

    removal = await service.remove_source(source.id)

    assert (removal.documents, removal.vectors) == (1, 2)
    status = service.status()
    assert (status.documents, status.analyses, status.vectors, status.sources) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_remove_unknown_source(service):
    assert service.find_source("deadbeef") is None
    with pytest.raises(InvalidInput):
        await service.remove_source("deadbeef")


def test_list_models(monkeypatch):
    import litellm

    monkeypatch.setattr(litellm, "models_by_provider", {"openai": ["gpt-4o", "gpt-4o-mini"]})
    assert SiftService.list_models("sk-test") == ("openai", ["gpt-4o", "gpt-4o-mini"])


def test_build_gate_uses_config(tmp_path):
    cfg = CvSiftConfig()
    cfg.rate_limit.min_interval_ms = 500
    cfg.rate_limit.completion.rpm = 2

    gate = build_gate(cfg, tmp_path)

    assert gate.burst.min_interval == 0.5
    assert gate.default_retry_seconds == 60
    assert gate.quota.limits_for("gemini/completion") == QuotaLimits(rpm=2, tpm=30_000)
    gate.quota.track_usage("gemini/completion", 10)
    assert (tmp_path / ".cvsift" / "rate_state.json").exists()
