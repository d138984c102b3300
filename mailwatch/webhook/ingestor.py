"""WebhookIngestor: turns Pub/Sub push deliveries into sync jobs."""

import logging
from typing import Any, Callable, Optional

from mailwatch.exceptions import InvalidSignatureError, MalformedNotificationError
from mailwatch.store import CredentialStore, WatchStore

from .dedupe import DedupeCache
from .envelope import parse_push_envelope
from .models import InboundNotification, IngestResult, IngestStatus
from .verification import PushVerifier

logger = logging.getLogger(__name__)


class WebhookIngestor:
    """Validates, dedupes and routes push notifications.

    The ingestor never calls Gmail itself. It hands the account to
    enqueue_sync, which is expected to return immediately, so the webhook
    can be acknowledged well within Pub/Sub's delivery deadline.

    Example:
        ingestor = WebhookIngestor(verifier, credential_store, watch_store, service.enqueue_sync)
        result = ingestor.on_notification(body, authorization=request.headers.get("authorization"))
    """

    def __init__(
        self,
        verifier: PushVerifier,
        credential_store: CredentialStore,
        watch_store: WatchStore,
        enqueue_sync: Callable[[InboundNotification], Any],
        dedupe: Optional[DedupeCache] = None,
    ):
        """Initialize the ingestor.

        Args:
            verifier: Authenticity checks for each delivery.
            credential_store: Resolves mailbox addresses to accounts.
            watch_store: Tells whether the account's watch is active.
            enqueue_sync: Schedules a sync for a resolved notification.
            dedupe: Recently seen notification keys. Defaults to a 60s window.
        """
        self._verifier = verifier
        self._credentials = credential_store
        self._watches = watch_store
        self._enqueue_sync = enqueue_sync
        self._dedupe = dedupe or DedupeCache()

    def on_notification(
        self,
        envelope: Any,
        authorization: Optional[str] = None,
        token: Optional[str] = None,
    ) -> IngestResult:
        """Handle one push delivery.

        Args:
            envelope: Parsed JSON body of the push request.
            authorization: Authorization header value (OIDC bearer token).
            token: Shared verification token from the query string.

        Returns:
            IngestResult. REJECTED results must not be acknowledged.
        """
        try:
            self._verifier.verify(authorization=authorization, token=token)
        except InvalidSignatureError as e:
            logger.warning("Rejected push delivery: %s", e.reason)
            return IngestResult(IngestStatus.REJECTED, reason="invalid_signature")

        try:
            push = parse_push_envelope(envelope)
        except MalformedNotificationError as e:
            logger.warning("Rejected push delivery: %s", e.reason)
            return IngestResult(IngestStatus.REJECTED, reason="malformed")

        if self._dedupe.check_and_add(push.dedupe_key):
            logger.debug("Duplicate push %s dropped", push.dedupe_key)
            return IngestResult(IngestStatus.DEDUPLICATED, reason="duplicate")

        account_id = self._credentials.find_account_by_email(push.email_address)
        if account_id is None:
            logger.info("Push for unknown mailbox %s ignored", push.email_address)
            return IngestResult(IngestStatus.IGNORED, reason="unknown_mailbox")

        watch = self._watches.get(account_id)
        if watch is None or not watch.is_active:
            logger.info("Push for account %s without an active watch ignored", account_id)
            return IngestResult(IngestStatus.IGNORED, account_id=account_id, reason="inactive_watch")

        notification = InboundNotification(
            account_id=account_id,
            delivered_cursor_hint=push.history_id,
            dedupe_key=push.dedupe_key,
        )
        try:
            self._enqueue_sync(notification)
        except Exception:
            # Let the redelivery through instead of dropping it as a duplicate
            self._dedupe.forget(push.dedupe_key)
            raise

        logger.info(
            "Accepted push for account %s (historyId %s)", account_id, push.history_id
        )
        return IngestResult(IngestStatus.ACCEPTED, account_id=account_id)
