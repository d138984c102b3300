"""Surfacing re-authorization requirements to account owners."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from mailwatch.store import DocumentStore, utcnow

logger = logging.getLogger(__name__)


class ReauthNotifier(ABC):
    """Interface for telling an account owner to reconnect Gmail."""

    @abstractmethod
    def notify(self, account_id: str, reason: str) -> None:
        """Signal that the account's Gmail grant is no longer usable.

        Args:
            account_id: Account whose owner must re-consent
            reason: Why the grant is unusable
        """
        pass

    def clear(self, account_id: str) -> None:
        """Withdraw an earlier notification after the owner reconnected."""
        pass


class LoggingReauthNotifier(ReauthNotifier):
    """Notifier that only logs. Useful for local runs and tests."""

    def notify(self, account_id: str, reason: str) -> None:
        logger.warning("Account %s must reconnect Gmail: %s", account_id, reason)


class StoreReauthNotifier(ReauthNotifier):
    """Flags the owner's user document so the app shows a reconnect banner."""

    COLLECTION = "users"

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    def notify(self, account_id: str, reason: str) -> None:
        self._store.set(
            self.COLLECTION,
            account_id,
            {
                "gmail_needs_reauth": True,
                "gmail_reauth_reason": reason,
                "gmail_reauth_flagged_at": self._clock().isoformat(),
            },
            merge=True,
        )
        logger.warning("Flagged account %s for Gmail reconnect: %s", account_id, reason)

    def clear(self, account_id: str) -> None:
        self._store.set(
            self.COLLECTION,
            account_id,
            {
                "gmail_needs_reauth": False,
                "gmail_reauth_reason": None,
                "gmail_reauth_flagged_at": None,
            },
            merge=True,
        )
