"""Data models for push notification ingestion."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from mailwatch.store.models import utcnow


class IngestStatus(str, Enum):
    """Outcome of handling one push delivery."""

    ACCEPTED = "accepted"
    DEDUPLICATED = "deduplicated"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class PushNotification:
    """Decoded Gmail payload of a Pub/Sub push message.

    Gmail pushes carry no message content, only the mailbox and the history
    id at the time of the change.

    Attributes:
        email_address: Mailbox that changed (lowercased)
        history_id: Mailbox history id at publish time
        pubsub_message_id: Pub/Sub message id, when present
        subscription: Pub/Sub subscription that delivered it
    """

    email_address: str
    history_id: str
    pubsub_message_id: Optional[str] = None
    subscription: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.email_address}:{self.history_id}"


@dataclass
class InboundNotification:
    """A push notification resolved to one of our accounts.

    Only a trigger: the cursor in the watch subscription stays authoritative.
    """

    account_id: str
    delivered_cursor_hint: str
    dedupe_key: str
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class IngestResult:
    """What happened to a push delivery."""

    status: IngestStatus
    account_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        """Whether the delivery should be acknowledged to Pub/Sub."""
        return self.status is not IngestStatus.REJECTED
