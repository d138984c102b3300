"""OAuth token lifecycle for connected Gmail accounts.

Public API:
    - TokenRefresher: Returns valid access tokens, coalescing refreshes
    - ReauthNotifier: Interface for telling owners to reconnect
    - LoggingReauthNotifier, StoreReauthNotifier: Notifier implementations
    - run_consent_flow: Browser consent flow producing a Credential
"""

from .consent import credential_from_google, run_consent_flow
from .notifier import LoggingReauthNotifier, ReauthNotifier, StoreReauthNotifier
from .token_refresher import DEFAULT_SAFETY_MARGIN, TokenRefresher

__all__ = [
    "TokenRefresher",
    "DEFAULT_SAFETY_MARGIN",
    "ReauthNotifier",
    "LoggingReauthNotifier",
    "StoreReauthNotifier",
    "run_consent_flow",
    "credential_from_google",
]
