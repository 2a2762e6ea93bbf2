"""
TradeBridge Core: API Quota Guard

Per-key admission control for every call to the external trading platform.

Two budgets per API key:
- Sliding window (e.g. 100 requests per 15 minutes)
- Daily ceiling, reset at the UTC date boundary

Nearing the daily ceiling publishes a key-rotation request once per key per
day; rotating and storing keys is someone else's job.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of one admission request"""
    allowed: bool
    retry_after: float = 0.0
    reason: Optional[str] = None   # "window" or "daily" when denied


@dataclass
class KeyUsage:
    """Rolling usage for one API key"""
    key: str
    window_calls: Deque[float] = field(default_factory=deque)
    day: Optional[date] = None
    day_count: int = 0
    rotation_requested: bool = False
    denials: int = 0

    def roll(self, now: float, window_seconds: float) -> None:
        cutoff = now - window_seconds
        while self.window_calls and self.window_calls[0] <= cutoff:
            self.window_calls.popleft()

        today = datetime.fromtimestamp(now, tz=timezone.utc).date()
        if self.day != today:
            if self.day is not None:
                logger.info(f"Resetting daily quota for key {_mask(self.key)} (last day: {self.day})")
            self.day = today
            self.day_count = 0
            self.rotation_requested = False


def _mask(key: str) -> str:
    return f"{key[:4]}***" if key else "<none>"


def _seconds_until_utc_midnight(now: float) -> float:
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = datetime.combine(current.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
    return max((midnight - current).total_seconds(), 0.001)


class QuotaGuard:
    """
    Atomic per-key admission against window and daily budgets.

    Usage:
        guard = QuotaGuard(window_limit=100, window_seconds=900, daily_limit=100_000)
        decision = guard.admit(api_key)
        if not decision.allowed:
            raise QuotaExceeded(api_key, decision.retry_after, decision.reason)
    """

    def __init__(
        self,
        window_limit: int = 100,
        window_seconds: float = 900.0,
        daily_limit: int = 100_000,
        rotation_threshold: float = 0.9,
        publisher=None,
        metrics=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            window_limit: Max admitted calls per key inside the sliding window
            window_seconds: Sliding window length
            daily_limit: Max admitted calls per key per UTC day
            rotation_threshold: Fraction of daily_limit that triggers a rotation request
            publisher: Optional EventPublisher for quota events
            metrics: Optional MetricsRecorder
            clock: Epoch-seconds clock (injectable for tests)
        """
        if window_limit <= 0 or daily_limit <= 0 or window_seconds <= 0:
            raise ValueError("Quota limits and window must be positive")

        self.window_limit = window_limit
        self.window_seconds = float(window_seconds)
        self.daily_limit = daily_limit
        self.rotation_threshold = rotation_threshold
        self._publisher = publisher
        self._metrics = metrics
        self._clock = clock

        self._usage: Dict[str, KeyUsage] = {}
        self._lock = Lock()

        logger.info(
            f"Initialized QuotaGuard: {window_limit} req/{window_seconds:.0f}s, "
            f"{daily_limit} req/day, rotation at {rotation_threshold:.0%}"
        )

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]], **kwargs) -> "QuotaGuard":
        raw = raw or {}
        return cls(
            window_limit=int(raw.get("window_limit", 100)),
            window_seconds=float(raw.get("window_seconds", 900)),
            daily_limit=int(raw.get("daily_limit", 100_000)),
            rotation_threshold=float(raw.get("rotation_threshold", 0.9)),
            **kwargs,
        )

    def admit(self, key: str) -> QuotaDecision:
        """
        Admit or deny one request for ``key``.

        An admitted request is counted against both budgets before returning.
        """
        events: List[Tuple[str, Dict[str, Any]]] = []

        with self._lock:
            now = self._clock()
            usage = self._usage.setdefault(key, KeyUsage(key=key))
            usage.roll(now, self.window_seconds)

            if usage.day_count >= self.daily_limit:
                decision = QuotaDecision(False, _seconds_until_utc_midnight(now), "daily")
            elif len(usage.window_calls) >= self.window_limit:
                oldest = usage.window_calls[0]
                retry_after = max(oldest + self.window_seconds - now, 0.001)
                decision = QuotaDecision(False, retry_after, "window")
            else:
                usage.window_calls.append(now)
                usage.day_count += 1
                decision = QuotaDecision(True)

                if (
                    not usage.rotation_requested
                    and usage.day_count >= self.rotation_threshold * self.daily_limit
                ):
                    usage.rotation_requested = True
                    events.append(("quota.key_rotation_requested", {
                        "key_hint": _mask(key),
                        "day_count": usage.day_count,
                        "daily_limit": self.daily_limit,
                    }))

            if not decision.allowed:
                usage.denials += 1
                events.append(("quota.exceeded", {
                    "key_hint": _mask(key),
                    "reason": decision.reason,
                    "retry_after": round(decision.retry_after, 3),
                }))

        # Publish outside the lock; subscribers may be slow
        for kind, payload in events:
            if kind == "quota.exceeded":
                logger.warning(
                    f"Quota denied for key {_mask(key)} ({payload['reason']}), "
                    f"retry after {payload['retry_after']:.1f}s"
                )
                if self._metrics:
                    self._metrics.record_quota_denial(payload["reason"])
            else:
                logger.warning(
                    f"Key {_mask(key)} at {payload['day_count']}/{payload['daily_limit']} daily calls; "
                    "requesting rotation"
                )
            if self._publisher:
                self._publisher.publish(kind, None, **payload)

        return decision

    def usage(self, key: str) -> Dict[str, Any]:
        with self._lock:
            usage = self._usage.get(key)
            if usage is None:
                return {"window_count": 0, "day_count": 0, "denials": 0, "rotation_requested": False}
            usage.roll(self._clock(), self.window_seconds)
            return {
                "window_count": len(usage.window_calls),
                "day_count": usage.day_count,
                "denials": usage.denials,
                "rotation_requested": usage.rotation_requested,
            }

    def reset(self, key: Optional[str] = None) -> None:
        """Reset usage (for testing)"""
        with self._lock:
            if key:
                self._usage.pop(key, None)
            else:
                self._usage.clear()
