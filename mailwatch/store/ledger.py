"""Ledger of messages whose side effects already ran."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Set

from .document_store import DocumentStore
from .models import _format_instant, _parse_instant, utcnow


class ProcessedMessageLedger(ABC):
    """Interface for tracking processed messages by account and message ID.

    The history syncer consults the ledger before handing a message to the
    downstream consumer, so a crash between fetching a delta and checkpointing
    the cursor does not repeat side effects for messages already handled.

    Entries only matter while the delta that produced them can still be
    replayed. Gmail keeps history for about a week, so prune() drops entries
    older than that and keeps the ledger from growing forever.

    Implementations:
    - InMemoryProcessedMessageLedger: For testing
    - StoreProcessedMessageLedger: Backed by the document store
    """

    @abstractmethod
    def is_processed(self, account_id: str, message_id: str) -> bool:
        """Check if a message has been processed.

        Args:
            account_id: Owning account
            message_id: Gmail message ID

        Returns:
            True if this message has already been processed
        """
        pass

    @abstractmethod
    def mark_processed(self, account_id: str, message_id: str) -> None:
        """Mark a message as processed.

        Args:
            account_id: Owning account
            message_id: Gmail message ID
        """
        pass

    @abstractmethod
    def get_processed_ids(self, account_id: str) -> Set[str]:
        """Get all processed message IDs for an account."""
        pass

    @abstractmethod
    def prune(self, older_than: datetime) -> int:
        """Forget messages processed before a cutoff.

        Args:
            older_than: Entries recorded strictly before this instant are
                removed. Entries without a recorded time are removed too.

        Returns:
            Number of entries removed
        """
        pass


class InMemoryProcessedMessageLedger(ProcessedMessageLedger):
    """In-memory implementation for testing.

    Processed IDs are lost on restart, so every message in an unsynced delta
    would be handed to the consumer again after a restart.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        """Initialize empty processed map."""
        self._clock = clock
        self._processed: dict[tuple[str, str], datetime] = {}

    def is_processed(self, account_id: str, message_id: str) -> bool:
        return (account_id, message_id) in self._processed

    def mark_processed(self, account_id: str, message_id: str) -> None:
        self._processed[(account_id, message_id)] = self._clock()

    def get_processed_ids(self, account_id: str) -> Set[str]:
        return {mid for aid, mid in self._processed if aid == account_id}

    def prune(self, older_than: datetime) -> int:
        stale = [key for key, at in self._processed.items() if at < older_than]
        for key in stale:
            del self._processed[key]
        return len(stale)

    def clear(self) -> None:
        """Clear all processed IDs. Useful for testing."""
        self._processed.clear()


class StoreProcessedMessageLedger(ProcessedMessageLedger):
    """Ledger persisted as one small document per processed message."""

    COLLECTION = "gmail_processed_messages"

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    @staticmethod
    def _doc_id(account_id: str, message_id: str) -> str:
        return f"{account_id}:{message_id}"

    def is_processed(self, account_id: str, message_id: str) -> bool:
        return self._store.get(self.COLLECTION, self._doc_id(account_id, message_id)) is not None

    def mark_processed(self, account_id: str, message_id: str) -> None:
        self._store.set(
            self.COLLECTION,
            self._doc_id(account_id, message_id),
            {
                "account_id": account_id,
                "message_id": message_id,
                "processed_at": _format_instant(self._clock()),
            },
            merge=False,
        )

    def get_processed_ids(self, account_id: str) -> Set[str]:
        return {
            doc["message_id"]
            for _, doc in self._store.where(self.COLLECTION, account_id=account_id)
        }

    def prune(self, older_than: datetime) -> int:
        stale = []
        for doc_id, doc in self._store.where(self.COLLECTION):
            processed_at = _parse_instant(doc.get("processed_at"))
            if processed_at is None or processed_at < older_than:
                stale.append(doc_id)
        if stale:
            self._store.batch_delete(self.COLLECTION, stale)
        return len(stale)
