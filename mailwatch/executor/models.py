"""In-memory bookkeeping for provider calls and per-account rate limits."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Classification(Enum):
    """How a failed provider call should be treated."""

    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    TERMINAL = "terminal"

    @property
    def is_retryable(self) -> bool:
        return self in (Classification.RETRYABLE, Classification.RATE_LIMITED)


@dataclass
class RetryableOperation:
    """State of one outbound provider call across its attempts.

    Attributes:
        name: Operation name for logs (e.g. "users.watch").
        account_id: Account the call is made for, if any.
        attempt: Number of failed attempts so far.
        next_eligible_at: Earliest time of the next attempt.
        classification: Classification of the last failure.
    """

    name: str
    account_id: Optional[str] = None
    attempt: int = 0
    next_eligible_at: Optional[datetime] = None
    classification: Optional[Classification] = None


@dataclass
class RateLimitState:
    """Rate-limit memory of one account, shared by all of its calls.

    When Gmail rate-limits a call, blocked_until makes every other call for the
    same account wait instead of immediately hitting the limit again.
    """

    account_id: str
    blocked_until: Optional[datetime] = None
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, now: datetime) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self.last_success_at = now

    def record_failure(self, now: datetime, blocked_until: Optional[datetime] = None) -> None:
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_at = now
            if blocked_until and (self.blocked_until is None or blocked_until > self.blocked_until):
                self.blocked_until = blocked_until

    def remaining_block(self, now: datetime) -> float:
        """Seconds until calls may resume, 0 if not blocked."""
        with self._lock:
            if self.blocked_until is None or self.blocked_until <= now:
                return 0.0
            return (self.blocked_until - now).total_seconds()
