"""Rate-limited execution of Gmail API calls.

Public API:
    - RateLimitedExecutor: Bounded exponential backoff with jitter
    - Classification: Retry decision for a failed call
    - RetryableOperation: Per-call attempt bookkeeping
    - RateLimitState: Per-account rate-limit memory
    - classify_error: Map an exception to a Classification
"""

from .classification import (
    classify_error,
    http_error_message,
    http_error_reasons,
    http_status,
    is_permission_error,
    retry_after_seconds,
)
from .executor import RateLimitedExecutor
from .models import Classification, RateLimitState, RetryableOperation

__all__ = [
    "RateLimitedExecutor",
    "Classification",
    "RetryableOperation",
    "RateLimitState",
    "classify_error",
    "http_error_message",
    "http_error_reasons",
    "http_status",
    "is_permission_error",
    "retry_after_seconds",
]
