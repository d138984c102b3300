"""Error taxonomy shared by every mailwatch component.

Only NeedsReauthError ever reaches the account owner. Everything else is
retried by the executor, deferred to the next natural trigger, or logged.
"""

from typing import Optional


class MailWatchError(Exception):
    """Base exception for all mailwatch errors."""

    pass


class ConfigError(MailWatchError):
    """Raised when a configuration value is missing or invalid."""

    def __init__(self, variable: str, message: str):
        self.variable = variable
        super().__init__(f"{variable}: {message}")


class AccountNotFoundError(MailWatchError):
    """Raised when no stored credential exists for an account."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No Gmail credential stored for account '{account_id}'")


class NeedsReauthError(MailWatchError):
    """Raised when the account owner has to grant consent again.

    Terminal: never retried automatically.
    """

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(
            f"Gmail access for account '{account_id}' requires re-authorization: {reason}"
        )


class ProviderRejectedError(MailWatchError):
    """Raised when Gmail permanently rejects a request (non-retryable 4xx)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class OAuthClientRejectedError(ProviderRejectedError):
    """Raised when the token endpoint rejects the OAuth client itself.

    invalid_client, unauthorized_client and similar errors come from the
    service's own client configuration. The operator fixes them; the account
    owner's grant is untouched, so nobody is asked to reconnect.
    """

    def __init__(self, account_id: str, error_code: Optional[str], detail: str):
        self.account_id = account_id
        super().__init__(
            f"Token endpoint rejected the OAuth client while refreshing account "
            f"'{account_id}': {detail}. Check GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
            reason=error_code,
        )


class TransientError(MailWatchError):
    """Raised for failures that are expected to clear on their own.

    Network errors, timeouts, 5xx and 429 responses end up here.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class ExhaustedError(MailWatchError):
    """Raised when an operation ran out of retry attempts.

    Callers treat this as transient-but-abandoned: the operation is re-triggered
    by the next renewal tick or webhook, never reported as success.
    """

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"'{operation}' gave up after {attempts} attempts{detail}")


class CursorGoneError(MailWatchError):
    """Raised when Gmail no longer recognises the stored history cursor.

    The watch has been re-baselined by the time this is raised; history between
    the stale cursor and the new one may be unrecoverable.
    """

    def __init__(self, account_id: str, stale_cursor: str, new_cursor: Optional[str] = None):
        self.account_id = account_id
        self.stale_cursor = stale_cursor
        self.new_cursor = new_cursor
        super().__init__(
            f"History cursor {stale_cursor} for account '{account_id}' is no longer valid; "
            f"re-baselined at {new_cursor or 'unknown'}. Messages in between may be lost."
        )


class InvalidSignatureError(MailWatchError):
    """Raised when a push delivery fails authenticity verification."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Push notification rejected: {reason}")


class MalformedNotificationError(MailWatchError):
    """Raised when a push envelope cannot be decoded."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed push notification: {reason}")
