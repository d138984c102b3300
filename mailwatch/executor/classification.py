"""Classification of Gmail API failures into retry decisions."""

import json
import socket
from typing import Optional

import httplib2
from google.auth.exceptions import TransportError
from googleapiclient.errors import HttpError

from mailwatch.exceptions import TransientError

from .models import Classification

# Gmail reports per-user quota exhaustion as 403 with these reasons
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

# 401/403 reasons meaning the grant itself lacks access
PERMISSION_REASONS = frozenset(
    {
        "insufficientPermissions",
        "ACCESS_TOKEN_SCOPE_INSUFFICIENT",
        "authError",
        "invalid_grant",
    }
)

NETWORK_ERRORS = (
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    httplib2.HttpLib2Error,
    TransportError,
)


def http_status(error: HttpError) -> int:
    """HTTP status code of a googleapiclient HttpError."""
    return int(error.resp.status)


def http_error_reasons(error: HttpError) -> set[str]:
    """Collect the machine-readable reasons from a Google API error body.

    Handles both the legacy ``errors[].reason`` layout and the newer
    ``details[].reason`` / ``status`` layout.
    """
    reasons: set[str] = set()
    content = error.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        body = json.loads(content)
    except (TypeError, ValueError):
        return reasons
    if not isinstance(body, dict):
        return reasons
    err = body.get("error")
    if isinstance(err, str):
        # OAuth token endpoint style: {"error": "invalid_grant"}
        reasons.add(err)
        return reasons
    if not isinstance(err, dict):
        return reasons
    for item in err.get("errors") or []:
        if isinstance(item, dict) and item.get("reason"):
            reasons.add(item["reason"])
    for item in err.get("details") or []:
        if isinstance(item, dict) and item.get("reason"):
            reasons.add(item["reason"])
    if err.get("status"):
        reasons.add(err["status"])
    return reasons


def http_error_message(error: HttpError) -> str:
    """Best-effort human readable message of an HttpError."""
    reason = getattr(error, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    return str(error)


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """Retry-After hint carried by a rate-limit response, if any."""
    if isinstance(error, TransientError):
        return error.retry_after
    if not isinstance(error, HttpError):
        return None
    value = error.resp.get("retry-after")
    if not isinstance(value, (str, int, float)):
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def is_permission_error(error: HttpError) -> bool:
    """True if a 401/403 means the grant lacks access, not a quota hit."""
    status = http_status(error)
    if status == 401:
        return True
    if status != 403:
        return False
    reasons = http_error_reasons(error)
    if reasons & PERMISSION_REASONS:
        return True
    return "insufficient authentication scopes" in http_error_message(error).lower()


def classify_error(error: BaseException) -> Classification:
    """Decide how the executor treats a failed provider call.

    - 429 and Gmail's 403 rate-limit reasons: RATE_LIMITED
    - 5xx, network errors, timeouts, TransientError: RETRYABLE
    - other 401/403: AUTH (propagated unmodified to the caller)
    - everything else: TERMINAL
    """
    if isinstance(error, HttpError):
        status = http_status(error)
        if status == 429:
            return Classification.RATE_LIMITED
        if status >= 500:
            return Classification.RETRYABLE
        if status == 403 and http_error_reasons(error) & RATE_LIMIT_REASONS:
            return Classification.RATE_LIMITED
        if status in (401, 403):
            return Classification.AUTH
        return Classification.TERMINAL
    if isinstance(error, TransientError):
        if error.status_code == 429:
            return Classification.RATE_LIMITED
        return Classification.RETRYABLE
    if isinstance(error, NETWORK_ERRORS):
        return Classification.RETRYABLE
    return Classification.TERMINAL
