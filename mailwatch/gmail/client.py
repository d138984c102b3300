"""Authenticated, rate-limited access to the Gmail API per account."""

import logging
from typing import Any, Callable, Optional

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest

from mailwatch.auth import TokenRefresher
from mailwatch.exceptions import ProviderRejectedError
from mailwatch.executor import (
    RateLimitedExecutor,
    http_error_message,
    http_status,
    is_permission_error,
)

logger = logging.getLogger(__name__)

DEFAULT_CALL_DEADLINE = 30.0

ServiceFactory = Callable[[str, float], Resource]


def build_gmail_service(access_token: str, timeout: float = DEFAULT_CALL_DEADLINE) -> Resource:
    """Build a Gmail v1 service bound to one access token.

    The socket timeout is the per-call deadline: a hung call surfaces as a
    TimeoutError, which the executor retries like any other network failure.
    """
    credentials = Credentials(token=access_token)
    http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("gmail", "v1", http=http, cache_discovery=False)


class GmailSession:
    """Runs Gmail requests for an account with a valid token and retry policy.

    Each call fetches a token from the shared TokenRefresher and executes the
    request through the RateLimitedExecutor. A 401 triggers exactly one forced
    refresh and retry; permission failures become NeedsReauthError; any other
    non-retryable HttpError becomes ProviderRejectedError.

    Example:
        session = GmailSession(refresher, executor)
        profile = session.execute(
            "acct-1",
            "users.getProfile",
            lambda service: service.users().getProfile(userId="me"),
        )
    """

    def __init__(
        self,
        token_refresher: TokenRefresher,
        executor: RateLimitedExecutor,
        service_factory: Optional[ServiceFactory] = None,
        call_deadline: float = DEFAULT_CALL_DEADLINE,
    ):
        self._tokens = token_refresher
        self._executor = executor
        self._service_factory = service_factory or build_gmail_service
        self._call_deadline = call_deadline

    @property
    def token_refresher(self) -> TokenRefresher:
        return self._tokens

    def execute(
        self,
        account_id: str,
        name: str,
        request_builder: Callable[[Resource], HttpRequest],
    ) -> dict[str, Any]:
        """Execute one Gmail request for an account.

        Args:
            account_id: Account to act as.
            name: Operation name for logs and errors (e.g. "users.watch").
            request_builder: Builds the HttpRequest from a service resource.

        Returns:
            Parsed JSON response.

        Raises:
            NeedsReauthError: If the grant is revoked or lacks permission.
            ProviderRejectedError: For other non-retryable 4xx responses.
            ExhaustedError: If retryable failures persisted.
        """
        token = self._tokens.get_valid_access_token(account_id)
        retried_auth = False
        while True:
            service = self._service_factory(token, self._call_deadline)
            try:
                return self._executor.execute(
                    lambda: request_builder(service).execute(num_retries=0),
                    name=name,
                    account_id=account_id,
                )
            except HttpError as e:
                status = http_status(e)
                if status == 401 and not retried_auth:
                    logger.info(
                        "%s for account %s got 401, forcing token refresh", name, account_id
                    )
                    retried_auth = True
                    token = self._tokens.force_refresh(account_id, rejected_token=token)
                    continue
                raise self._convert_http_error(account_id, name, e) from e

    def _convert_http_error(self, account_id: str, name: str, error: HttpError) -> Exception:
        status = http_status(error)
        message = http_error_message(error)
        if is_permission_error(error):
            logger.error(
                "%s for account %s denied (status=%d): %s", name, account_id, status, message
            )
            return self._tokens.report_reauth_required(
                account_id, f"Gmail denied {name}: {message}"
            )
        logger.error(
            "%s for account %s rejected (status=%d): %s", name, account_id, status, message
        )
        return ProviderRejectedError(
            f"{name} rejected by Gmail: {message}", status_code=status, reason=message
        )
