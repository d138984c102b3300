"""Per-account persistence of Gmail watch subscriptions."""

import logging
from datetime import datetime
from typing import Callable, Optional

from .document_store import DocumentStore
from .models import (
    InactiveReason,
    WatchSubscription,
    _format_instant,
    cursor_value,
    utcnow,
)

logger = logging.getLogger(__name__)


class WatchStore:
    """Reads and writes one WatchSubscription document per account.

    Cursor writes come from exactly two places: WatchRegistrar.replace() when
    a registration supersedes the previous cursor, and HistorySyncer through
    advance_cursor(). Both run on the account's serialized work queue, so the
    read-compare-write in advance_cursor() has a single writer.
    """

    COLLECTION = "gmail_watches"

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._clock = clock

    def get(self, account_id: str) -> Optional[WatchSubscription]:
        """Get the account's subscription, or None if never registered."""
        data = self._store.get(self.COLLECTION, account_id)
        if data is None:
            return None
        return WatchSubscription.from_dict(data)

    def replace(self, subscription: WatchSubscription) -> None:
        """Overwrite the account's subscription with a new registration."""
        self._store.set(
            self.COLLECTION, subscription.account_id, subscription.to_dict(), merge=False
        )

    def advance_cursor(self, account_id: str, new_cursor: str) -> bool:
        """Checkpoint the history cursor, never moving it backwards.

        Args:
            account_id: Account to checkpoint.
            new_cursor: Gmail historyId the account is now synced up to.

        Returns:
            True if the stored cursor moved forward, False if it was already
            at or beyond new_cursor.
        """
        current = self.get(account_id)
        now = _format_instant(self._clock())
        if current is not None and cursor_value(new_cursor) <= cursor_value(current.cursor):
            self._store.set(self.COLLECTION, account_id, {"last_synced_at": now}, merge=True)
            if cursor_value(new_cursor) < cursor_value(current.cursor):
                logger.debug(
                    "Ignoring stale checkpoint %s for account %s (stored %s)",
                    new_cursor,
                    account_id,
                    current.cursor,
                )
            return False
        self._store.set(
            self.COLLECTION,
            account_id,
            {"cursor": new_cursor, "last_synced_at": now},
            merge=True,
        )
        return True

    def mark_inactive(self, account_id: str, reason: InactiveReason) -> None:
        """Stop processing notifications for the account."""
        if self.get(account_id) is None:
            return
        self._store.set(
            self.COLLECTION,
            account_id,
            {
                "is_active": False,
                "inactive_reason": reason.value,
                "deactivated_at": _format_instant(self._clock()),
            },
            merge=True,
        )
        logger.info("Watch for account %s marked inactive (%s)", account_id, reason.value)

    def set_sync_pending(self, account_id: str, pending: bool) -> None:
        """Flag or clear an unfinished history delta for the retry job."""
        if self.get(account_id) is None:
            return
        self._store.set(self.COLLECTION, account_id, {"sync_pending": pending}, merge=True)

    def record_cursor_gone(self, account_id: str) -> None:
        """Note that the account's history had to be re-baselined."""
        self._store.set(
            self.COLLECTION,
            account_id,
            {"last_cursor_gone_at": _format_instant(self._clock())},
            merge=True,
        )

    def delete(self, account_id: str) -> None:
        self._store.delete(self.COLLECTION, account_id)

    def list_all(self) -> list[WatchSubscription]:
        """Every stored subscription, active or not."""
        subscriptions = []
        for account_id in self._store.list_ids(self.COLLECTION):
            subscription = self.get(account_id)
            if subscription is not None:
                subscriptions.append(subscription)
        return subscriptions
