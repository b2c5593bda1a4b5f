"""
auth/ratelimit.py -- Advisory, client-local sliding-window attempt limiter.

This gate exists for user experience only: it turns a sixth rapid attempt
into immediate "try again in N minutes" feedback without a round-trip to the
identity provider. It carries no security weight -- clearing client state
bypasses it -- and the server-side LockoutManager (auth/lockout.py) enforces
the real bound whether or not this limiter is present.

State is a bounded ring buffer of (identity_key, timestamp) records owned by
the instance. There is no module-level singleton: the limiter is constructed
by the caller and injected into AdminClient.

The threshold and window default to the same 5 attempts / 15 minutes as the
lockout, but are separate settings (CLIENT_RATE_LIMIT_*) and may diverge.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import RateLimitDecision
from core.clock import Clock, utcnow
from core.config import get_settings


@dataclass(frozen=True)
class AttemptRecord:
    identity_key: str
    timestamp: datetime


def _key(identity_key: str) -> str:
    return identity_key.strip().lower()


class AttemptRateLimiter:
    """Sliding-window counter over a bounded deque.

    check_allowed() is a pure read. record_attempt() appends and prunes.
    clear() drops every record for one key after a verified success.

    When the buffer is full the oldest record is evicted regardless of key.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        window: timedelta | None = None,
        capacity: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.max_attempts = max_attempts if max_attempts is not None else settings.client_rate_limit_attempts
        self.window = window if window is not None else settings.client_rate_limit_window
        capacity = capacity if capacity is not None else settings.client_rate_limit_capacity
        self._records: deque[AttemptRecord] = deque(maxlen=capacity)
        self._clock = clock
        self._lock = threading.Lock()

    def check_allowed(self, identity_key: str) -> RateLimitDecision:
        """Return whether another attempt for identity_key should be sent.

        retry_after = window - (now - oldest matching record in the window).
        """
        key = _key(identity_key)
        now = self._clock()
        cutoff = now - self.window
        with self._lock:
            matching = [r for r in self._records if r.identity_key == key and r.timestamp > cutoff]
        if len(matching) < self.max_attempts:
            return RateLimitDecision(allowed=True)
        oldest = min(r.timestamp for r in matching)
        return RateLimitDecision(allowed=False, retry_after=self.window - (now - oldest))

    def record_attempt(self, identity_key: str) -> None:
        now = self._clock()
        with self._lock:
            self._records.append(AttemptRecord(_key(identity_key), now))
            self._prune(now)

    def clear(self, identity_key: str) -> None:
        key = _key(identity_key)
        with self._lock:
            kept = [r for r in self._records if r.identity_key != key]
            self._records.clear()
            self._records.extend(kept)

    def attempts(self, identity_key: str) -> int:
        """Number of in-window records for identity_key."""
        key = _key(identity_key)
        cutoff = self._clock() - self.window
        with self._lock:
            return sum(1 for r in self._records if r.identity_key == key and r.timestamp > cutoff)

    def _prune(self, now: datetime) -> None:
        # Records are appended in clock order, so expired ones sit at the left.
        cutoff = now - self.window
        while self._records and self._records[0].timestamp <= cutoff:
            self._records.popleft()
