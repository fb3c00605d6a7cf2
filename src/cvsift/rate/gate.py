"""RateGate: the single funnel every outbound provider call passes through.

Order per call: cooldown check (fail fast) → burst spacing → quota window →
the call itself. The gate does not interpret provider errors; callers that
recognise a 429 report it back through ``notify_rate_limited``.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from cvsift.rate.burst import BurstGuard
from cvsift.rate.quota import QuotaTracker, scope_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_SECONDS = 60.0


class RateGate:
    """Compose BurstGuard and QuotaTracker around outbound calls."""

    def __init__(
        self,
        burst: BurstGuard | None = None,
        quota: QuotaTracker | None = None,
        *,
        default_retry_seconds: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        self.burst = burst or BurstGuard()
        self.quota = quota or QuotaTracker()
        self.default_retry_seconds = default_retry_seconds

    async def run(
        self,
        provider: str,
        purpose: str,
        call: Callable[[], Awaitable[T]],
        *,
        tokens: int = 0,
    ) -> T:
        """Throttle, meter, then await ``call()``.

        Args:
            provider: Provider key (``gemini``, ``openai``, ...). Burst spacing
                is per provider.
            purpose: ``completion`` or ``embedding``; selects the quota scope.
            call: Zero-argument coroutine factory performing the request.
            tokens: Estimated token cost charged against the TPM budget.

        Raises:
            RateLimited: If the provider is cooling down.
        """
        scope = scope_key(provider, purpose)
        self.quota.check_cooldown(scope)
        await self.burst.wait(provider)
        await self.quota.acquire(scope, requests=1, tokens=tokens)
        return await call()

    def notify_rate_limited(self, provider: str, retry_after: float | None) -> float:
        """Record a provider 429. Returns the cooldown applied, in seconds."""
        seconds = retry_after if retry_after and retry_after > 0 else self.default_retry_seconds
        self.quota.trip_cooldown(provider, seconds)
        return seconds

    def track_usage(self, provider: str, purpose: str, tokens: int) -> None:
        self.quota.track_usage(scope_key(provider, purpose), tokens)
