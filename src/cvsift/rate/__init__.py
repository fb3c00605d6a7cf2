"""Outbound call throttling: burst spacing, quota windows and provider cooldowns."""

from cvsift.rate.burst import BurstGuard
from cvsift.rate.gate import RateGate
from cvsift.rate.quota import DEFAULT_LIMITS, QuotaLimits, QuotaTracker, RateState, scope_key

__all__ = [
    "BurstGuard",
    "DEFAULT_LIMITS",
    "QuotaLimits",
    "QuotaTracker",
    "RateGate",
    "RateState",
    "scope_key",
]
