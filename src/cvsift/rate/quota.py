"""QuotaTracker: per-scope sliding request/token windows with a persisted snapshot.

A scope is ``"{provider}/{purpose}"`` (e.g. ``gemini/completion``). Each scope
counts requests and estimated tokens inside a 60-second window. A provider
that answered 429 is put into cooldown on all of its scopes; while the
cooldown lasts every call fails fast with RateLimited.

State is written to a JSON snapshot after every mutation so that a restarted
process does not believe it has a fresh quota.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Awaitable, Callable, Mapping

from cvsift.errors import RateLimited

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
_ROLLOVER_BUFFER = 0.5  # seconds added to every window wait
_SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class QuotaLimits:
    """Requests-per-minute and tokens-per-minute ceilings for one purpose."""

    rpm: int = 5
    tpm: int = 30_000


# Conservative defaults tuned to free-tier ceilings.
DEFAULT_LIMITS: dict[str, QuotaLimits] = {
    "completion": QuotaLimits(rpm=5, tpm=30_000),
    "embedding": QuotaLimits(rpm=1_500, tpm=1_000_000),
}


@dataclass
class RateState:
    requests_this_window: int = 0
    tokens_this_window: int = 0
    window_start: float = 0.0
    cooldown_until: float = 0.0
    total_tokens: int = 0


def scope_key(provider: str, purpose: str) -> str:
    return f"{provider}/{purpose}"


class QuotaTracker:
    """Meter outbound calls per scope against RPM/TPM limits."""

    def __init__(
        self,
        limits: Mapping[str, QuotaLimits] | None = None,
        *,
        state_path: Path | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        window: float = WINDOW_SECONDS,
    ) -> None:
        """
        Args:
            limits: Limits per purpose (``completion`` / ``embedding``). Purposes
                not listed fall back to ``QuotaLimits()``.
            state_path: JSON snapshot location; None keeps state in memory only.
            clock: Wall-clock source. Wall time (not monotonic) because the
                snapshot must stay meaningful across restarts.
            sleep: Awaitable sleep, injectable for tests.
            window: Window length in seconds.
        """
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._state_path = state_path
        self._clock = clock
        self._sleep = sleep
        self._window = window
        self._states: dict[str, RateState] = {}
        self._write_lock = threading.Lock()
        self._seq = 0
        self._written = 0
        self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def limits_for(self, scope: str) -> QuotaLimits:
        purpose = scope.split("/", 1)[1] if "/" in scope else scope
        return self._limits.get(purpose, QuotaLimits())

    def state(self, scope: str) -> RateState:
        """Return the live state for *scope* (created empty on first use)."""
        if scope not in self._states:
            self._states[scope] = RateState(window_start=self._clock())
        return self._states[scope]

    def snapshot(self) -> dict[str, RateState]:
        return {k: RateState(**asdict(v)) for k, v in self._states.items()}

    def check_cooldown(self, scope: str) -> None:
        """Raise RateLimited if *scope* is cooling down. Never sleeps."""
        st = self._states.get(scope)
        if st is None:
            return
        remaining = st.cooldown_until - self._clock()
        if remaining > 0:
            provider = scope.split("/", 1)[0]
            logger.warning(
                f"[rate] {scope}: cooldown active, rejecting call locally "
                f"({remaining:.1f}s remaining)"
            )
            raise RateLimited(remaining, provider=provider)

    async def acquire(self, scope: str, requests: int = 1, tokens: int = 0) -> None:
        """Register a call of the given cost, waiting for window rollover if needed.

        Loops because a concurrent caller may consume the budget while this
        one sleeps. A cost larger than the whole budget is admitted into an
        empty window.

        Raises:
            RateLimited: If the scope is (or becomes) cooling down.
        """
        limits = self.limits_for(scope)
        while True:
            self.check_cooldown(scope)
            st = self._roll_window(scope)
            empty = st.requests_this_window == 0 and st.tokens_this_window == 0
            over_rpm = st.requests_this_window + requests > limits.rpm
            over_tpm = st.tokens_this_window + tokens > limits.tpm
            if empty or not (over_rpm or over_tpm):
                break
            wait = max(0.0, st.window_start + self._window - self._clock()) + _ROLLOVER_BUFFER
            which = "RPM" if over_rpm else "TPM"
            used = st.requests_this_window if over_rpm else st.tokens_this_window
            limit = limits.rpm if over_rpm else limits.tpm
            logger.warning(
                f"[rate] {scope}: {which} limit hit ({used}/{limit}). "
                f"Waiting {wait:.1f}s for the window to roll over"
            )
            await self._sleep(wait)

        st.requests_this_window += requests
        st.tokens_this_window += tokens
        await self._save_async()

    def trip_cooldown(self, provider: str, seconds: float) -> None:
        """Put every scope of *provider* into cooldown for *seconds*."""
        until = self._clock() + seconds
        scopes = {scope_key(provider, purpose) for purpose in self._limits}
        scopes.update(k for k in self._states if k.startswith(f"{provider}/"))
        for scope in sorted(scopes):
            st = self.state(scope)
            st.cooldown_until = max(st.cooldown_until, until)
        logger.error(
            f"[rate] {provider}: external rate limit hit, cooling down for {seconds:.0f}s"
        )
        self._save()

    def track_usage(self, scope: str, tokens: int) -> None:
        """Add provider-reported token usage to the scope's running total."""
        if tokens <= 0:
            return
        st = self.state(scope)
        st.total_tokens += tokens
        logger.info(f"[rate] {scope}: +{tokens} tokens (total {st.total_tokens})")
        self._save()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _roll_window(self, scope: str) -> RateState:
        st = self.state(scope)
        now = self._clock()
        if now - st.window_start >= self._window:
            st.requests_this_window = 0
            st.tokens_this_window = 0
            st.window_start = now
        return st

    def _load(self) -> None:
        if self._state_path is None or not self._state_path.exists():
            return
        try:
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
            known = {f.name for f in fields(RateState)}
            for scope, raw in data.get("scopes", {}).items():
                self._states[scope] = RateState(
                    **{k: v for k, v in raw.items() if k in known}
                )
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning(f"[rate] Ignoring unreadable rate snapshot {self._state_path}: {exc}")
            self._states = {}
            return
        logger.debug(f"[rate] Loaded rate snapshot for {len(self._states)} scope(s)")

    def _encode(self) -> tuple[int, str] | None:
        if self._state_path is None:
            return None
        self._seq += 1
        payload = {
            "version": _SNAPSHOT_VERSION,
            "scopes": {k: asdict(v) for k, v in self._states.items()},
        }
        return self._seq, json.dumps(payload, indent=2)

    def _write(self, seq: int, text: str) -> None:
        """Write snapshot *seq* unless a newer one already reached the disk."""
        assert self._state_path is not None
        with self._write_lock:
            if seq <= self._written:
                return
            tmp = self._state_path.with_suffix(self._state_path.suffix + ".tmp")
            try:
                self._state_path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(text, encoding="utf-8")
                os.replace(tmp, self._state_path)
            except OSError as exc:
                logger.warning(
                    f"[rate] Failed to persist rate snapshot {self._state_path}: {exc}"
                )
                return
            self._written = seq

    def _save(self) -> None:
        encoded = self._encode()
        if encoded is not None:
            self._write(*encoded)

    async def _save_async(self) -> None:
        """Like _save, with the file write in a worker thread."""
        encoded = self._encode()
        if encoded is not None:
            await asyncio.to_thread(self._write, *encoded)
