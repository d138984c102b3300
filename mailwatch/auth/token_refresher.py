"""TokenRefresher: keeps each account's Gmail access token valid."""

import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailwatch.config import GOOGLE_TOKEN_URI
from mailwatch.exceptions import (
    AccountNotFoundError,
    NeedsReauthError,
    OAuthClientRejectedError,
    TransientError,
)
from mailwatch.executor import RateLimitedExecutor
from mailwatch.store import Credential, CredentialStore, utcnow

from .notifier import LoggingReauthNotifier, ReauthNotifier

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)

# Google access tokens live one hour; used when the response omits expiry
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

# Token endpoint errors that only a new consent grant from the owner fixes
GRANT_ERROR_CODES = frozenset({"invalid_grant"})


def refresh_error_code(error: RefreshError) -> Optional[str]:
    """OAuth error code of a failed token exchange, e.g. "invalid_grant".

    google-auth passes the parsed response body as the second argument and
    prefixes the message with the code ("invalid_grant: Token has been
    expired or revoked.").
    """
    if len(error.args) > 1 and isinstance(error.args[1], dict):
        code = error.args[1].get("error")
        if isinstance(code, str) and code:
            return code
    message = str(error.args[0]) if error.args else ""
    head = message.split(":", 1)[0].strip()
    if head and " " not in head:
        return head
    return None


class TokenRefresher:
    """Returns currently valid access tokens, refreshing them when needed.

    One instance is shared by every component making Gmail calls. Concurrent
    refreshes for the same account are coalesced: the first caller performs
    the exchange and later callers wait on its result, so a refresh token is
    never exchanged twice in parallel.

    Example usage:
        refresher = TokenRefresher(store, executor, client_id, client_secret)
        token = refresher.get_valid_access_token("acct-1")
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        executor: RateLimitedExecutor,
        client_id: str,
        client_secret: str,
        token_uri: str = GOOGLE_TOKEN_URI,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        notifier: Optional[ReauthNotifier] = None,
        request: Optional[Request] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the refresher.

        Args:
            credential_store: Where credentials are read and written.
            executor: Executor running the token exchange.
            client_id: OAuth client ID.
            client_secret: OAuth client secret.
            token_uri: Google token endpoint.
            safety_margin: Tokens expiring within this margin are refreshed.
            notifier: Told when an account needs re-authorization.
                Defaults to LoggingReauthNotifier.
            request: google-auth transport request. Created lazily.
            clock: Current-time source.
        """
        self._store = credential_store
        self._executor = executor
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri
        self._safety_margin = safety_margin
        self._notifier = notifier or LoggingReauthNotifier()
        self._request = request
        self._clock = clock
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def _get_request(self) -> Request:
        if self._request is None:
            self._request = Request()
        return self._request

    def _load(self, account_id: str) -> Credential:
        credential = self._store.get(account_id)
        if credential is None:
            raise AccountNotFoundError(account_id)
        return credential

    def get_valid_access_token(self, account_id: str) -> str:
        """Get an access token that stays valid beyond the safety margin.

        Args:
            account_id: Account to get a token for.

        Returns:
            The stored token if still fresh, otherwise a newly refreshed one.

        Raises:
            AccountNotFoundError: If no credential is stored.
            NeedsReauthError: If the credential cannot be refreshed.
            ExhaustedError: If the token endpoint kept failing transiently.
        """
        credential = self._load(account_id)
        if credential.needs_reauth:
            raise NeedsReauthError(account_id, credential.reauth_reason or "re-authorization pending")
        if not credential.expires_within(self._safety_margin, self._clock()):
            return credential.access_token
        return self._coalesced_refresh(account_id, rejected_token=None)

    def force_refresh(self, account_id: str, rejected_token: str) -> str:
        """Refresh after Gmail rejected a token that looked valid.

        A no-op returning the stored token if another caller already rotated
        it away from rejected_token.
        """
        return self._coalesced_refresh(account_id, rejected_token=rejected_token)

    def report_reauth_required(self, account_id: str, reason: str) -> NeedsReauthError:
        """Flag the credential, notify the owner once, and build the error.

        Returns:
            The NeedsReauthError for the caller to raise.
        """
        credential = self._store.get(account_id)
        already_flagged = credential is not None and credential.needs_reauth
        if credential is not None:
            self._store.mark_needs_reauth(account_id, reason)
        if not already_flagged:
            self._notifier.notify(account_id, reason)
        return NeedsReauthError(account_id, reason)

    def _coalesced_refresh(self, account_id: str, rejected_token: Optional[str]) -> str:
        with self._lock:
            future = self._inflight.get(account_id)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[account_id] = future

        if not owner:
            logger.debug("Waiting for in-flight token refresh of account %s", account_id)
            return future.result()

        try:
            token = self._refresh(account_id, rejected_token)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(token)
            return token
        finally:
            with self._lock:
                self._inflight.pop(account_id, None)

    def _refresh(self, account_id: str, rejected_token: Optional[str]) -> str:
        # Re-read: a refresh that finished just before we became the owner
        # already rotated the token.
        credential = self._load(account_id)
        expiring = credential.expires_within(self._safety_margin, self._clock())
        if not expiring and (rejected_token is None or credential.access_token != rejected_token):
            return credential.access_token

        if not credential.refresh_token:
            raise self.report_reauth_required(
                account_id, "access token expired and no refresh token is stored"
            )

        google_creds = Credentials(
            token=None,
            refresh_token=credential.refresh_token,
            token_uri=self._token_uri,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=sorted(credential.scopes) or None,
        )

        def exchange() -> None:
            try:
                google_creds.refresh(self._get_request())
            except RefreshError as e:
                if getattr(e, "retryable", False):
                    raise TransientError(f"Token endpoint unavailable: {e}") from e
                raise

        try:
            self._executor.execute(exchange, name="oauth.refresh", account_id=account_id)
        except RefreshError as e:
            error_code = refresh_error_code(e)
            if error_code not in GRANT_ERROR_CODES:
                logger.error(
                    "Token endpoint rejected the OAuth client for account %s (%s): %s",
                    account_id,
                    error_code or "unknown error",
                    e,
                )
                raise OAuthClientRejectedError(account_id, error_code, str(e)) from e
            logger.error("Token refresh rejected for account %s: %s", account_id, e)
            raise self.report_reauth_required(
                account_id, f"refresh token rejected by provider: {e}"
            ) from e

        expires_at = google_creds.expiry
        if expires_at is None:
            expires_at = self._clock() + DEFAULT_TOKEN_LIFETIME
        elif expires_at.tzinfo is None:
            # google-auth reports expiry as naive UTC
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        new_refresh_token = google_creds.refresh_token
        if new_refresh_token == credential.refresh_token:
            new_refresh_token = None

        granted = getattr(google_creds, "granted_scopes", None)
        self._store.update_tokens(
            account_id,
            access_token=google_creds.token,
            expires_at=expires_at,
            refresh_token=new_refresh_token,
            scopes=frozenset(granted) if granted else None,
        )
        logger.info(
            "Refreshed access token for account %s (expires %s%s)",
            account_id,
            expires_at.isoformat(),
            ", refresh token rotated" if new_refresh_token else "",
        )
        return google_creds.token
