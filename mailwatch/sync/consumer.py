"""Downstream consumers of newly synced messages."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from mailwatch.store import DocumentStore, utcnow

from .models import MailMessage

logger = logging.getLogger(__name__)


class MessageConsumer(ABC):
    """Receives each newly added message at least once.

    Consumers own their idempotency: after a crash between delivery and cursor
    checkpoint the same message may be delivered again.

    message_format is the users.messages.get format the syncer fetches with:
    "metadata" for headers only, "full" when the consumer needs the body.
    """

    message_format = "metadata"

    @abstractmethod
    def consume(self, account_id: str, message_id: str, content: MailMessage) -> None:
        """Derive side effects (todos, notifications) from a message.

        Args:
            account_id: Account the mailbox belongs to
            message_id: Gmail message ID
            content: Parsed message
        """
        pass


class TodoSuggestionConsumer(MessageConsumer):
    """Mirrors mail from known contacts and suggests a follow-up todo for it.

    For each message from a sender in the account's contacts:
    - the message is saved to the contact's conversation (contact_messages),
      so it shows next to the rest of the exchange with that contact;
    - a follow-up todo suggestion is created.

    Both documents use deterministic IDs derived from the message ID, so
    repeated deliveries create nothing new.
    """

    COLLECTION = "todo_suggestions"
    CONTACTS_COLLECTION = "contacts"
    MESSAGES_COLLECTION = "contact_messages"

    # Length of the preview stored next to the full body
    SNIPPET_LENGTH = 300

    def __init__(
        self,
        store: DocumentStore,
        require_known_contact: bool = True,
        mirror_messages: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the consumer.

        Args:
            store: Document store holding contacts, messages and suggestions.
            require_known_contact: Ignore mail from senders that are not in the
                account's contacts.
            mirror_messages: Save each contact's message, body included. Needs
                format=full fetches.
            clock: Current-time source.
        """
        self._store = store
        self._require_known_contact = require_known_contact
        self._mirror_messages = mirror_messages
        self._clock = clock
        self.message_format = "full" if mirror_messages else "metadata"

    @staticmethod
    def suggestion_id(account_id: str, message_id: str) -> str:
        return f"{account_id}:gmail-{message_id}"

    @staticmethod
    def mirrored_message_id(account_id: str, message_id: str) -> str:
        return f"{account_id}:{message_id}"

    def _find_contact(self, account_id: str, email: str) -> Optional[str]:
        matches = self._store.where(
            self.CONTACTS_COLLECTION, account_id=account_id, email=email.lower()
        )
        return matches[0][0] if matches else None

    def consume(self, account_id: str, message_id: str, content: MailMessage) -> None:
        contact_id = None
        if self._require_known_contact or self._mirror_messages:
            contact_id = self._find_contact(account_id, content.sender_email)
        if contact_id is None and self._require_known_contact:
            logger.debug(
                "No contact for sender %s of message %s, skipping",
                content.sender_email,
                message_id,
            )
            return

        if contact_id is not None and self._mirror_messages:
            self._mirror(account_id, message_id, contact_id, content)

        doc_id = self.suggestion_id(account_id, message_id)
        if self._store.get(self.COLLECTION, doc_id) is not None:
            logger.debug("Todo suggestion for message %s already exists", message_id)
            return

        self._store.set(
            self.COLLECTION,
            doc_id,
            {
                "account_id": account_id,
                "text": f"Follow up on: {content.subject}",
                "source": "gmail",
                "message_id": message_id,
                "thread_id": content.thread_id,
                "email_from": content.sender_email,
                "email_subject": content.subject,
                "contact_id": contact_id,
                "status": "pending",
                "created_at": self._clock().isoformat(),
            },
            merge=False,
        )
        logger.info(
            "Created todo suggestion for message %s of account %s", message_id, account_id
        )

    def _mirror(
        self, account_id: str, message_id: str, contact_id: str, content: MailMessage
    ) -> None:
        body = content.body
        snippet = body[: self.SNIPPET_LENGTH]
        if len(body) > self.SNIPPET_LENGTH:
            snippet += "..."
        self._store.set(
            self.MESSAGES_COLLECTION,
            self.mirrored_message_id(account_id, message_id),
            {
                "account_id": account_id,
                "contact_id": contact_id,
                "gmail_message_id": message_id,
                "thread_id": content.thread_id,
                "from": content.sender_email,
                "to": list(content.recipients),
                "subject": content.subject,
                "body": body,
                "body_snippet": snippet,
                "sent_at": content.sent_at.isoformat(),
                "is_read": not content.is_unread,
                "direction": "inbound",
                "source": "gmail",
                "message_id_header": content.rfc822_message_id,
            },
            merge=True,
        )
        logger.debug("Mirrored message %s to contact %s", message_id, contact_id)
