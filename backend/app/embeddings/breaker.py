"""Quota-aware circuit breaker shared by embedding and completion call sites.

One breaker instance is created per application and handed to every client
that talks to the hosted providers. It opens in two ways:

- quota exhaustion (HTTP 429 / insufficient quota): open until the next UTC
  midnight, so the rest of the day goes straight to the fallback path
- repeated transient failures within a window: open for a short cool-down,
  then half-open to let one trial call through
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


class ProviderQuotaExceeded(Exception):
    """Provider rejected the call because the quota or rate limit is exhausted."""

    pass


class BreakerState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the next UTC day after `now`."""
    now_utc = now.astimezone(timezone.utc)
    return datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=timezone.utc) + timedelta(
        days=1
    )


@dataclass
class QuotaBreaker:
    """Provider circuit breaker with a daily quota reset."""

    name: str
    failure_threshold: int = 5
    window_seconds: int = 60
    cooldown_seconds: int = 30
    state: BreakerState = BreakerState.CLOSED
    failure_times: list[datetime] = field(default_factory=list)
    open_until: datetime | None = None
    quota_exhausted: bool = False
    trial_in_flight: bool = False

    def record_success(self) -> None:
        """Record a successful provider call."""
        if self.state == BreakerState.HALF_OPEN:
            self.reset()
        else:
            self.failure_times.clear()

    def record_failure(self, now: datetime) -> None:
        """Record a transient provider failure (timeout, 5xx, connection)."""
        if self.state == BreakerState.HALF_OPEN:
            self._open(now + timedelta(seconds=self.cooldown_seconds))
            return

        cutoff = now - timedelta(seconds=self.window_seconds)
        self.failure_times = [t for t in self.failure_times if t > cutoff]
        self.failure_times.append(now)

        if len(self.failure_times) >= self.failure_threshold:
            self._open(now + timedelta(seconds=self.cooldown_seconds))

    def record_quota_exhausted(self, now: datetime) -> None:
        """Remember quota exhaustion until the provider's daily reset."""
        self.quota_exhausted = True
        self._open(next_utc_midnight(now))

    def check_and_update_state(self, now: datetime) -> BreakerState:
        """Move OPEN to HALF_OPEN (or CLOSED after a quota reset) once the deadline passes."""
        if self.state == BreakerState.OPEN and self.open_until and now >= self.open_until:
            if self.quota_exhausted:
                self.reset()
            else:
                self.state = BreakerState.HALF_OPEN
        return self.state

    def is_open(self, now: datetime) -> bool:
        """Check if a call must be rejected.

        While half-open the first caller becomes the trial call; everyone else
        is rejected until that call records a success or a failure.
        """
        state = self.check_and_update_state(now)
        if state == BreakerState.HALF_OPEN:
            if self.trial_in_flight:
                return True
            self.trial_in_flight = True
            return False
        return state == BreakerState.OPEN

    def reset(self) -> None:
        """Close the breaker and forget all failures."""
        self.state = BreakerState.CLOSED
        self.failure_times.clear()
        self.open_until = None
        self.quota_exhausted = False
        self.trial_in_flight = False

    def _open(self, until: datetime) -> None:
        self.state = BreakerState.OPEN
        self.open_until = until
        self.trial_in_flight = False
