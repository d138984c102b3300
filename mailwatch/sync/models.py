"""Data models for the history sync module."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class MailMessage:
    """A message that arrived in a watched mailbox.

    body is only filled in when the message was fetched with format=full.

    Attributes:
        id: Gmail message ID.
        thread_id: Gmail thread ID.
        subject: Subject header, "(No Subject)" when absent.
        sender_name: Display name from the From header, or the address.
        sender_email: Lowercased sender address.
        recipients: Lowercased To addresses.
        sent_at: Date header, falling back to Gmail's internalDate.
        label_ids: Gmail labels at fetch time.
        snippet: Gmail's preview text.
        body: Plain-text body, "" for metadata fetches.
        rfc822_message_id: Message-ID header, if present.
    """

    id: str
    thread_id: str
    subject: str
    sender_name: str
    sender_email: str
    sent_at: datetime
    recipients: list[str] = field(default_factory=list)
    label_ids: list[str] = field(default_factory=list)
    snippet: str = ""
    body: str = ""
    rfc822_message_id: Optional[str] = None

    @property
    def is_unread(self) -> bool:
        return "UNREAD" in self.label_ids


@dataclass
class SyncResult:
    """Outcome of one HistorySyncer.sync() call.

    Attributes:
        account_id: Account that was synced.
        previous_cursor: Cursor stored before the sync.
        new_cursor: Cursor after the sync (checkpointed if cursor_advanced).
        processed_message_ids: Messages handed to the consumer in this call.
        skipped_message_ids: Messages already processed earlier or deleted
            before they could be fetched.
        filtered_message_ids: Messages outside the watch's label filter.
        has_more: Delivery tuning capped this call; another sync is needed.
        cursor_advanced: Whether the stored cursor moved forward.
    """

    account_id: str
    previous_cursor: Optional[str] = None
    new_cursor: Optional[str] = None
    processed_message_ids: list[str] = field(default_factory=list)
    skipped_message_ids: list[str] = field(default_factory=list)
    filtered_message_ids: list[str] = field(default_factory=list)
    has_more: bool = False
    cursor_advanced: bool = False
