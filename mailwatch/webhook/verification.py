"""Authenticity checks for Pub/Sub push deliveries."""

import hmac
import logging
from typing import Any, Callable, Optional

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from mailwatch.exceptions import ConfigError, InvalidSignatureError

logger = logging.getLogger(__name__)


class PushVerifier:
    """Verifies that a push request really comes from our Pub/Sub subscription.

    Two mechanisms, usable together:
    - OIDC: the push subscription attaches a Google-signed ID token in the
      Authorization header. The audience and signer service account are checked.
    - Shared token: a secret query parameter configured on the push endpoint,
      compared in constant time.

    Every configured mechanism must pass. With nothing configured the verifier
    refuses to start unless allow_unverified is set explicitly.
    """

    def __init__(
        self,
        audience: str = "",
        service_account_email: str = "",
        shared_token: str = "",
        allow_unverified: bool = False,
        token_verifier: Optional[Callable[..., dict[str, Any]]] = None,
        request: Optional[google_requests.Request] = None,
    ):
        """Initialize the verifier.

        Args:
            audience: Expected "aud" claim of the OIDC token.
            service_account_email: Expected "email" claim of the OIDC token.
            shared_token: Expected value of the token query parameter.
            allow_unverified: Accept unauthenticated pushes (local development).
            token_verifier: Replacement for id_token.verify_oauth2_token.
            request: Transport used to fetch Google's signing certificates.

        Raises:
            ConfigError: If no mechanism is configured and unverified pushes
                are not explicitly allowed.
        """
        if not (audience or shared_token) and not allow_unverified:
            raise ConfigError(
                "MAILWATCH_PUSH_AUDIENCE",
                "set MAILWATCH_PUSH_AUDIENCE or MAILWATCH_PUSH_TOKEN "
                "(or MAILWATCH_ALLOW_UNVERIFIED_PUSH=true for local use)",
            )
        if allow_unverified and not (audience or shared_token):
            logger.warning("Push verification is disabled; accepting unauthenticated webhooks")
        self._audience = audience
        self._service_account_email = service_account_email.lower()
        self._shared_token = shared_token
        self._verify_token = token_verifier or id_token.verify_oauth2_token
        self._request = request

    def verify(self, authorization: Optional[str] = None, token: Optional[str] = None) -> None:
        """Check a push request's credentials.

        Args:
            authorization: Value of the Authorization header.
            token: Value of the shared-token query parameter.

        Raises:
            InvalidSignatureError: If any configured check fails.
        """
        if self._shared_token:
            if not token or not hmac.compare_digest(
                token.encode("utf-8"), self._shared_token.encode("utf-8")
            ):
                raise InvalidSignatureError("verification token mismatch")
        if self._audience:
            self._verify_oidc(authorization)

    def verify_challenge_token(self, token: Optional[str]) -> bool:
        """Check the token guarding the verification GET endpoint."""
        if not self._shared_token:
            return False
        return bool(token) and hmac.compare_digest(
            token.encode("utf-8"), self._shared_token.encode("utf-8")
        )

    def _verify_oidc(self, authorization: Optional[str]) -> None:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise InvalidSignatureError("missing bearer token")
        bearer = authorization.split(" ", 1)[1].strip()
        if self._request is None:
            self._request = google_requests.Request()
        try:
            claims = self._verify_token(bearer, self._request, self._audience)
        except (ValueError, google_exceptions.GoogleAuthError) as e:
            raise InvalidSignatureError(f"invalid OIDC token ({e})") from e

        if self._service_account_email:
            if str(claims.get("email", "")).lower() != self._service_account_email:
                raise InvalidSignatureError("token not signed by the push service account")
            if not claims.get("email_verified", False):
                raise InvalidSignatureError("push service account email not verified")
