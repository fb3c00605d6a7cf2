"""LLM provider capabilities and key-shape detection.

A Provider knows how to embed, how to complete, and how to read its own
errors (quota, missing model, auth). Which provider serves a request is
decided by ``select_provider(api_key)`` from the key's structural prefix; the
heuristic lives only in ``detect_provider_name``.

Fallback order when a model is missing (first success wins):
  gemini:    requested → gemini-2.0-flash → gemini-1.5-flash-latest → gemini-1.5-pro
  openai:    requested → gpt-4o-mini → gpt-4o → gpt-3.5-turbo
  anthropic: requested → claude-3-5-haiku-20241022 → claude-3-5-sonnet-20241022
             → claude-3-haiku-20240307
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

import litellm

from cvsift.errors import InvalidInput

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


class ErrorKind(enum.Enum):
    QUOTA = "quota"
    MODEL_MISSING = "model_missing"
    AUTH = "auth"
    OTHER = "other"


@dataclass
class Completion:
    text: str
    total_tokens: int = 0


_RETRY_AFTER_RES = (
    re.compile(r"retry[_ ]?delay[\"']?\s*[:=]\s*[\"']?(\d+(?:\.\d+)?)s", re.IGNORECASE),
    re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"try again in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
)

_MODEL_MISSING_HINTS = (
    "model not found",
    "is not found",
    "not supported for",
    "does not exist",
    "unsupported model",
    "no such model",
    "model_not_found",
)

_QUOTA_HINTS = ("429", "quota", "resource_exhausted", "rate limit", "too many requests")


class Provider:
    """Base provider: litellm-backed embed/complete plus error classification."""

    name: str = ""
    litellm_prefix: str = ""
    default_model: str = ""
    embedding_model: str | None = None
    fallback_models: tuple[str, ...] = ()
    json_mode: bool = True

    def qualify(self, model: str) -> str:
        """Return the litellm model string (``provider/model``) for *model*."""
        if model.startswith(f"{self.litellm_prefix}/"):
            return model
        return f"{self.litellm_prefix}/{model}"

    def model_chain(self, requested: str | None) -> list[str]:
        """Requested model first, then the documented fallbacks (deduplicated)."""
        chain: list[str] = []
        for m in (requested or self.default_model, *self.fallback_models):
            if m and m not in chain:
                chain.append(m)
        return chain

    async def embed(self, text: str, api_key: str) -> list[float]:
        if self.embedding_model is None:
            raise InvalidInput(
                f"Provider '{self.name}' has no embedding model. "
                "Use a Gemini or OpenAI key for ingestion and queries."
            )
        response = await litellm.aembedding(
            model=self.qualify(self.embedding_model),
            input=[text],
            api_key=api_key,
            num_retries=0,
        )
        return list(response.data[0]["embedding"])

    async def complete(
        self, prompt: str, model: str, api_key: str, max_tokens: int
    ) -> Completion:
        kwargs: dict = {}
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await litellm.acompletion(
            model=self.qualify(model),
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=0,
            api_key=api_key,
            num_retries=0,
            **kwargs,
        )
        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        total = int(getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
        return Completion(text=text, total_tokens=total)

    def classify_error(self, exc: BaseException) -> ErrorKind:
        if isinstance(exc, litellm.RateLimitError):
            return ErrorKind.QUOTA
        if isinstance(exc, litellm.NotFoundError):
            return ErrorKind.MODEL_MISSING
        if isinstance(exc, litellm.AuthenticationError):
            return ErrorKind.AUTH
        msg = str(exc).lower()
        if any(h in msg for h in _QUOTA_HINTS):
            return ErrorKind.QUOTA
        if any(h in msg for h in _MODEL_MISSING_HINTS):
            return ErrorKind.MODEL_MISSING
        return ErrorKind.OTHER

    def retry_after(self, exc: BaseException) -> float | None:
        """Provider-indicated retry delay in seconds, if the error carries one."""
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            value = headers.get("retry-after")
            if value is not None and str(value).replace(".", "", 1).isdigit():
                return float(value)
        msg = str(exc)
        for pattern in _RETRY_AFTER_RES:
            m = pattern.search(msg)
            if m:
                return float(m.group(1))
        return None

    def list_models(self) -> list[str]:
        """Known chat models for this provider, from litellm's static registry."""
        models = litellm.models_by_provider.get(self.litellm_prefix, [])
        return sorted({m.split("/", 1)[-1] for m in models})


class GeminiProvider(Provider):
    name = "gemini"
    litellm_prefix = "gemini"
    default_model = "gemini-1.5-flash"
    embedding_model = "text-embedding-004"
    fallback_models = ("gemini-2.0-flash", "gemini-1.5-flash-latest", "gemini-1.5-pro")


class OpenAIProvider(Provider):
    name = "openai"
    litellm_prefix = "openai"
    default_model = "gpt-4o-mini"
    embedding_model = "text-embedding-3-small"
    fallback_models = ("gpt-4o-mini", "gpt-4o", "gpt-3.5-turbo")


class AnthropicProvider(Provider):
    name = "anthropic"
    litellm_prefix = "anthropic"
    default_model = "claude-3-5-haiku-20241022"
    embedding_model = None
    fallback_models = (
        "claude-3-5-haiku-20241022",
        "claude-3-5-sonnet-20241022",
        "claude-3-haiku-20240307",
    )
    json_mode = False


_PROVIDERS: dict[str, type[Provider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def detect_provider_name(api_key: str) -> str | None:
    """Map an API key to a provider name by its prefix, or None if unrecognised.

    AIza…    → gemini
    sk-ant-… → anthropic (checked before the generic sk- prefix)
    sk-…     → openai
    """
    key = (api_key or "").strip()
    if key.startswith("AIza"):
        return "gemini"
    if key.startswith("sk-ant-"):
        return "anthropic"
    if key.startswith("sk-"):
        return "openai"
    return None


def select_provider(api_key: str) -> Provider:
    """Return the Provider serving *api_key*.

    Raises:
        InvalidInput: If the key is missing or its shape is not recognised.
    """
    if not api_key or not api_key.strip():
        raise InvalidInput("An API key is required.")
    name = detect_provider_name(api_key)
    if name is None:
        raise InvalidInput(
            "Unrecognised API key format. Expected a Gemini (AIza…), "
            "OpenAI (sk-…) or Anthropic (sk-ant-…) key."
        )
    return _PROVIDERS[name]()


_SYSTEM_PROMPT = (
    "You are a recruiting assistant that evaluates candidate CVs against a job context. "
    "Respond with a single JSON object and nothing else."
)
