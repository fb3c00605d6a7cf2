"""Tests for provider detection, fallback chains and error classification."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from cvsift.errors import InvalidInput
from cvsift.rag.providers import (
    AnthropicProvider,
    ErrorKind,
    GeminiProvider,
    OpenAIProvider,
    detect_provider_name,
    select_provider,
)


# ---------------------------------------------------------------------------
# Key detection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "key, expected",
    [
        ("AIzaSyExample", "gemini"),
        ("sk-ant-api03-abc", "anthropic"),
        ("sk-proj-abc", "openai"),
        ("  AIzaPadded  ", "gemini"),
        ("gsk_unknown", None),
        ("", None),
    ],
)
def test_detect_provider_name(key, expected):
    assert detect_provider_name(key) == expected


def test_select_provider_returns_instance():
    assert isinstance(select_provider("AIzaX"), GeminiProvider)
    assert isinstance(select_provider("sk-ant-x"), AnthropicProvider)
    assert isinstance(select_provider("sk-x"), OpenAIProvider)


@pytest.mark.parametrize("key", ["", "   ", "hf_token"])
def test_select_provider_rejects_missing_or_unknown(key):
    with pytest.raises(InvalidInput):
        select_provider(key)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def test_model_chain_starts_with_requested_and_dedupes():
    chain = OpenAIProvider().model_chain("gpt-4o")
    assert chain == ["gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"]


def test_model_chain_defaults_when_unrequested():
    chain = GeminiProvider().model_chain(None)
    assert chain[0] == "gemini-1.5-flash"
    assert chain[1:] == list(GeminiProvider.fallback_models)


def test_qualify_adds_prefix_once():
    p = GeminiProvider()
    assert p.qualify("gemini-1.5-pro") == "gemini/gemini-1.5-pro"
    assert p.qualify("gemini/gemini-1.5-pro") == "gemini/gemini-1.5-pro"


def test_list_models_strips_prefix(monkeypatch):
    import litellm

    monkeypatch.setattr(
        litellm,
        "models_by_provider",
        {"gemini": ["gemini/gemini-1.5-pro", "gemini-1.5-flash", "gemini/gemini-1.5-flash"]},
    )
    assert GeminiProvider().list_models() == ["gemini-1.5-flash", "gemini-1.5-pro"]
    assert OpenAIProvider().list_models() == []


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "message, kind",
    [
        ("Error 429: Too Many Requests", ErrorKind.QUOTA),
        ("RESOURCE_EXHAUSTED: quota exceeded", ErrorKind.QUOTA),
        ("models/gemini-9 is not found for API version v1beta", ErrorKind.MODEL_MISSING),
        ("The model `gpt-7` does not exist", ErrorKind.MODEL_MISSING),
        ("connection reset by peer", ErrorKind.OTHER),
    ],
)
def test_classify_error_by_message(message, kind):
    assert GeminiProvider().classify_error(RuntimeError(message)) is kind


@pytest.mark.parametrize(
    "message, seconds",
    [
        ('"retryDelay": "17s"', 17.0),
        ("Please retry in 30s.", 30.0),
        ("Rate limit reached. Please try again in 1.5s", 1.5),
        ("quota exceeded", None),
    ],
)
def test_retry_after_from_message(message, seconds):
    assert OpenAIProvider().retry_after(RuntimeError(message)) == seconds


def test_retry_after_prefers_header():
    exc = RuntimeError("429 retry in 30s")
    exc.response = SimpleNamespace(headers={"retry-after": "12"})
    assert OpenAIProvider().retry_after(exc) == 12.0


# ---------------------------------------------------------------------------
# litellm calls
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_embed_calls_litellm_without_retries():
    response = SimpleNamespace(data=[{"embedding": [0.1, 0.2]}])
    with patch("litellm.aembedding", new=AsyncMock(return_value=response)) as mock:
        vector = await GeminiProvider().embed("hello", "AIzaX")

    assert vector == [0.1, 0.2]
    kwargs = mock.await_args.kwargs
    assert kwargs["model"] == "gemini/text-embedding-004"
    assert kwargs["input"] == ["hello"]
    assert kwargs["num_retries"] == 0


@pytest.mark.asyncio
async def test_anthropic_embed_is_invalid_input():
    with pytest.raises(InvalidInput):
        await AnthropicProvider().embed("hello", "sk-ant-x")


def _completion(text, total=0):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=total),
    )


@pytest.mark.asyncio
async def test_complete_requests_json_mode():
    with patch("litellm.acompletion", new=AsyncMock(return_value=_completion("{}", 42))) as mock:
        result = await OpenAIProvider().complete("prompt", "gpt-4o-mini", "sk-x", 500)

    assert result.text == "{}"
    assert result.total_tokens == 42
    kwargs = mock.await_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o-mini"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["max_tokens"] == 500
    assert kwargs["messages"][-1] == {"role": "user", "content": "prompt"}


@pytest.mark.asyncio
async def test_anthropic_complete_skips_json_mode():
    with patch("litellm.acompletion", new=AsyncMock(return_value=_completion(None))) as mock:
        result = await AnthropicProvider().complete("p", "claude-3-haiku-20240307", "sk-ant-x", 100)

    assert result.text == ""
    assert "response_format" not in mock.await_args.kwargs
