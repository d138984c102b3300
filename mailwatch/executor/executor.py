"""RateLimitedExecutor: the single place where provider retry policy lives."""

import logging
import random
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from mailwatch.exceptions import ExhaustedError
from mailwatch.store.models import utcnow

from .classification import classify_error, retry_after_seconds
from .models import Classification, RateLimitState, RetryableOperation

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0


class RateLimitedExecutor:
    """Runs provider calls with bounded exponential backoff and jitter.

    Failures are classified by classify_error():
    - RETRYABLE / RATE_LIMITED: retried after a backoff delay
    - AUTH (401/403): re-raised unmodified, token handling is the caller's job
    - TERMINAL: re-raised unmodified, never retried

    After max_attempts retryable failures an ExhaustedError is raised. Backoff
    sleeps suspend only the calling worker thread, so other accounts keep
    making progress on the other workers.

    Example:
        executor = RateLimitedExecutor()
        profile = executor.execute(
            lambda: service.users().getProfile(userId="me").execute(),
            name="users.getProfile",
            account_id="acct-1",
        )
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the executor.

        Args:
            max_attempts: Default number of attempts per call.
            base_delay: Default base delay in seconds.
            max_delay: Ceiling for a single delay in seconds.
            sleep: Sleep function (injectable for tests).
            rng: Random source for jitter.
            clock: Current-time source.
        """
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}
        self._states_lock = threading.Lock()

    @property
    def max_delay(self) -> float:
        return self._max_delay

    def state_for(self, account_id: str) -> RateLimitState:
        """Get (or create) the shared rate-limit state of an account."""
        with self._states_lock:
            state = self._states.get(account_id)
            if state is None:
                state = RateLimitState(account_id=account_id)
                self._states[account_id] = state
            return state

    def backoff_delay(
        self,
        attempt: int,
        base_delay: Optional[float] = None,
        retry_after: Optional[float] = None,
    ) -> float:
        """Delay before retry number attempt (0-based).

        delay = base * 2**attempt + uniform(0, base), raised to a Retry-After
        hint if one was given, and capped at max_delay.
        """
        base = self._base_delay if base_delay is None else base_delay
        delay = base * (2**attempt) + self._rng.uniform(0, base)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self._max_delay)

    def _wait_for_rate_limit(self, state: Optional[RateLimitState]) -> None:
        if state is None:
            return
        remaining = state.remaining_block(self._clock())
        if remaining > 0:
            wait = min(remaining, self._max_delay)
            logger.debug(
                "Account %s is rate limited, waiting %.1fs before calling",
                state.account_id,
                wait,
            )
            self._sleep(wait)

    def execute(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        *,
        name: str = "provider call",
        account_id: Optional[str] = None,
        state: Optional[RateLimitState] = None,
    ) -> T:
        """Run operation, retrying retryable failures.

        Args:
            operation: Zero-argument callable performing one provider call.
            max_attempts: Attempts before giving up. Defaults to the
                executor's configured value.
            base_delay: Base backoff delay in seconds.
            name: Operation name for logs and errors.
            account_id: Account the call is made for; selects the shared
                RateLimitState when state is not given.
            state: Explicit rate-limit state to consult and update.

        Returns:
            Whatever operation returns.

        Raises:
            ExhaustedError: If every attempt failed with a retryable error.
            Exception: Auth and terminal failures, re-raised unmodified.
        """
        attempts = max_attempts or self._max_attempts
        if state is None and account_id is not None:
            state = self.state_for(account_id)
        op = RetryableOperation(name=name, account_id=account_id)

        # Retries sleep until their own next_eligible_at, so only the first
        # attempt waits on a block set by another call.
        self._wait_for_rate_limit(state)
        while True:
            try:
                result = operation()
            except Exception as e:
                classification = classify_error(e)
                op.classification = classification
                now = self._clock()

                if not classification.is_retryable:
                    if classification is Classification.TERMINAL and state is not None:
                        state.record_failure(now)
                    logger.debug(
                        "%s for account %s failed (%s): %s",
                        name,
                        account_id,
                        classification.value,
                        e,
                    )
                    raise

                op.attempt += 1
                if op.attempt >= attempts:
                    if state is not None:
                        state.record_failure(now)
                    logger.warning(
                        "%s for account %s exhausted after %d attempts: %s",
                        name,
                        account_id,
                        op.attempt,
                        e,
                    )
                    raise ExhaustedError(name, op.attempt, e) from e

                delay = self.backoff_delay(
                    op.attempt - 1, base_delay, retry_after_seconds(e)
                )
                op.next_eligible_at = now + timedelta(seconds=delay)
                if state is not None:
                    blocked = (
                        op.next_eligible_at
                        if classification is Classification.RATE_LIMITED
                        else None
                    )
                    state.record_failure(now, blocked_until=blocked)
                logger.warning(
                    "%s for account %s failed (%s, attempt %d/%d), retrying in %.1fs: %s",
                    name,
                    account_id,
                    classification.value,
                    op.attempt,
                    attempts,
                    delay,
                    e,
                )
                self._sleep(delay)
                continue

            if state is not None:
                state.record_success(self._clock())
            return result
