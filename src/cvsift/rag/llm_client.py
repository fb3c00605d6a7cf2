"""Gated LLM clients: every embedding and completion call routes through here.

Each call goes through the shared RateGate. Provider errors are classified
once, here: a quota response trips the provider cooldown and becomes
RateLimited; a missing model becomes ModelUnavailable (the analysis
orchestrator walks the fallback chain on it); anything else becomes
EmbeddingFailed or AnalysisFailed. LiteLLM's own retries are disabled so
nothing is retried silently.
"""

from __future__ import annotations

import logging

import litellm

from cvsift.errors import (
    AnalysisFailed,
    CvSiftError,
    EmbeddingFailed,
    InvalidInput,
    ModelUnavailable,
    RateLimited,
)
from cvsift.rag.providers import Completion, ErrorKind, Provider, select_provider
from cvsift.rate.gate import RateGate

logger = logging.getLogger(__name__)


def estimate_tokens(model: str, text: str) -> int:
    """Token cost of *text* for *model*, charged against the TPM quota.

    Uses litellm's provider-aware counter; models it cannot tokenize fall
    back to 4 characters per token.
    """
    try:
        return max(1, litellm.token_counter(model=model, text=text))
    except Exception:
        return max(1, len(text) // 4)


class EmbeddingClient:
    """text → vector, through the RateGate, for the provider behind the key."""

    def __init__(self, gate: RateGate) -> None:
        self._gate = gate

    async def embed(self, text: str, api_key: str) -> list[float]:
        """Embed *text* with the provider selected by *api_key*.

        Raises:
            InvalidInput: Unrecognised key, or provider without embeddings.
            RateLimited: Provider cooling down or answered 429.
            EmbeddingFailed: Any other provider failure.
        """
        provider = select_provider(api_key)
        if provider.embedding_model is None:
            raise InvalidInput(
                f"Provider '{provider.name}' has no embedding model. "
                "Use a Gemini or OpenAI key for ingestion and queries."
            )
        try:
            vector = await self._gate.run(
                provider.name,
                "embedding",
                lambda: provider.embed(text, api_key),
                tokens=estimate_tokens(provider.qualify(provider.embedding_model), text),
            )
        except CvSiftError:
            raise
        except Exception as exc:
            err = _translate(self._gate, provider, provider.embedding_model or "", exc, EmbeddingFailed)
            if isinstance(err, ModelUnavailable):
                err = EmbeddingFailed(str(err))
            raise err from exc
        if not vector:
            raise EmbeddingFailed(f"Provider '{provider.name}' returned an empty embedding.")
        return vector


class CompletionClient:
    """prompt → text, through the RateGate."""

    def __init__(self, gate: RateGate) -> None:
        self._gate = gate

    async def complete(
        self,
        provider: Provider,
        prompt: str,
        model: str,
        api_key: str,
        max_tokens: int,
    ) -> Completion:
        """Run one completion attempt against *model*.

        Raises:
            RateLimited: Provider cooling down or answered 429.
            ModelUnavailable: The model does not exist / is not supported.
            AnalysisFailed: Any other failure (auth, transport, bad request).
        """
        cost = estimate_tokens(provider.qualify(model), prompt) + max_tokens
        try:
            result = await self._gate.run(
                provider.name,
                "completion",
                lambda: provider.complete(prompt, model, api_key, max_tokens),
                tokens=cost,
            )
        except CvSiftError:
            raise
        except Exception as exc:
            raise _translate(self._gate, provider, model, exc, AnalysisFailed) from exc
        self._gate.track_usage(provider.name, "completion", result.total_tokens)
        return result


def _translate(
    gate: RateGate,
    provider: Provider,
    model: str,
    exc: Exception,
    fallback_cls: type[EmbeddingFailed] | type[AnalysisFailed],
) -> CvSiftError:
    kind = provider.classify_error(exc)
    if kind is ErrorKind.QUOTA:
        seconds = gate.notify_rate_limited(provider.name, provider.retry_after(exc))
        logger.error(
            f"[llm] {provider.name}/{model}: quota exceeded, provider cooling down for {seconds:.0f}s"
        )
        return RateLimited(seconds, provider=provider.name)
    if kind is ErrorKind.MODEL_MISSING:
        return ModelUnavailable(provider.name, model, detail=str(exc)[:200])
    if kind is ErrorKind.AUTH:
        return fallback_cls(f"Authentication failed for provider '{provider.name}': {exc}")
    return fallback_cls(f"{provider.name}/{model} call failed: {exc}")
