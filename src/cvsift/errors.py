"""Exception taxonomy for the cvsift core.

InvalidInput is raised before any external call is made. IngestError
subclasses are recoverable: re-running the same ingest later is safe because
a document is only skipped once it has been indexed successfully.
RateLimited carries a concrete wait hint; AnalysisFailed is terminal for the
call that raised it.
"""

from __future__ import annotations

import math


class CvSiftError(Exception):
    """Base class for every error raised by the cvsift core."""


class InvalidInput(CvSiftError, ValueError):
    """Bad caller input: empty query, missing or unrecognised API key, unknown tier."""


class InvalidQuery(InvalidInput):
    """Query text is empty or whitespace-only."""


class IngestError(CvSiftError):
    """A single document could not be ingested; it stays unindexed.

    Attributes:
        location: Location of the document that failed (may be empty).
    """

    def __init__(self, message: str, location: str = "") -> None:
        super().__init__(message)
        self.location = location


class ExtractionFailed(IngestError):
    """The text extractor could not read the document."""


class EmptyDocument(IngestError):
    """The document produced zero chunks."""


class EmbeddingFailed(IngestError):
    """The embedding provider failed for at least one chunk."""


class StorageFailed(IngestError):
    """The vector store rejected the write."""


class RateLimited(CvSiftError):
    """The provider signalled quota exhaustion, or its local cooldown is active.

    Attributes:
        retry_after: Whole seconds the caller should wait before retrying.
        provider: Provider name the cooldown applies to.
    """

    def __init__(self, retry_after: float, provider: str = "") -> None:
        self.retry_after = max(1, math.ceil(retry_after))
        self.provider = provider
        label = f"'{provider}' " if provider else ""
        super().__init__(
            f"Provider {label}is rate limited. Retry after {self.retry_after}s."
        )


class AnalysisFailed(CvSiftError):
    """An analysis call failed for a reason other than quota."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ModelUnavailable(CvSiftError):
    """The requested model does not exist or is not supported by the provider."""

    def __init__(self, provider: str, model: str, detail: str = "") -> None:
        self.provider = provider
        self.model = model
        msg = f"Model '{model}' is not available for provider '{provider}'."
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
