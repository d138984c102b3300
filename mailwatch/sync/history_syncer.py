"""HistorySyncer: turns a history cursor delta into processed messages."""

import logging
import time
from typing import Any, Callable, Optional

from mailwatch.exceptions import (
    CursorGoneError,
    ExhaustedError,
    OAuthClientRejectedError,
    ProviderRejectedError,
    TransientError,
)
from mailwatch.gmail import GmailSession
from mailwatch.store import (
    InMemoryProcessedMessageLedger,
    ProcessedMessageLedger,
    WatchStore,
    WatchSubscription,
)
from mailwatch.watch import WatchRegistrar

from .consumer import MessageConsumer
from .models import SyncResult
from .parser import METADATA_HEADERS, parse_message

logger = logging.getLogger(__name__)

# Largest page users.history.list accepts
HISTORY_PAGE_SIZE = 500

# Mail the owner wrote; only delivered when it also landed in the inbox
OUTGOING_LABELS = frozenset({"SENT", "DRAFT"})

# Failures after which the unprocessed delta is left for the retry job
RETRYABLE_SYNC_ERRORS = (TransientError, ExhaustedError, OAuthClientRejectedError)


class HistorySyncer:
    """Resolves the delta between the stored cursor and Gmail's current state.

    Guarantees:
    - Each added message reaches the consumer at least once. The cursor is
      checkpointed only after every side effect in the processed range
      succeeded; on failure it stays where it was.
    - Messages already recorded in the ledger are not delivered again when a
      range is re-fetched after a failure.
    - The cursor never moves backwards.
    - An expired cursor is never guessed around: the watch is re-baselined and
      CursorGoneError reports the possible loss.
    - A delta left unfinished by a transient failure or the delivery cap is
      flagged sync_pending on the watch until a later sync completes it.

    Example:
        syncer = HistorySyncer(session, watch_store, registrar, consumer)
        result = syncer.sync("acct-1")
        print(result.processed_message_ids, result.new_cursor)
    """

    def __init__(
        self,
        session: GmailSession,
        watch_store: WatchStore,
        registrar: WatchRegistrar,
        consumer: MessageConsumer,
        ledger: Optional[ProcessedMessageLedger] = None,
        sleep: Callable[[float], None] = time.sleep,
        page_size: int = HISTORY_PAGE_SIZE,
    ):
        """Initialize the syncer.

        Args:
            session: Gmail session for history and message calls.
            watch_store: Holds the cursor and delivery tuning.
            registrar: Used to re-baseline an expired cursor.
            consumer: Receives each new message.
            ledger: Processed-message ledger. Defaults to in-memory.
            sleep: Sleep function for inter-delivery delays.
            page_size: users.history.list page size.
        """
        self._session = session
        self._watches = watch_store
        self._registrar = registrar
        self._consumer = consumer
        self._ledger = ledger or InMemoryProcessedMessageLedger()
        self._sleep = sleep
        self._page_size = page_size

    @property
    def ledger(self) -> ProcessedMessageLedger:
        return self._ledger

    def sync(self, account_id: str) -> SyncResult:
        """Process everything added since the stored cursor.

        Args:
            account_id: Account to sync.

        Returns:
            SyncResult describing processed messages and the new cursor.

        Raises:
            CursorGoneError: If the cursor expired (watch already re-baselined).
            NeedsReauthError: If the grant is no longer usable.
            ExhaustedError: If Gmail kept failing transiently.
            ProviderRejectedError: If Gmail permanently rejected a call.
        """
        watch = self._watches.get(account_id)
        if watch is None or not watch.is_active:
            logger.info("No active watch for account %s, nothing to sync", account_id)
            return SyncResult(
                account_id=account_id,
                previous_cursor=watch.cursor if watch else None,
                new_cursor=watch.cursor if watch else None,
            )

        try:
            result = self._sync_delta(account_id, watch)
        except RETRYABLE_SYNC_ERRORS:
            logger.warning(
                "Sync of account %s failed; delta from cursor %s left pending for retry",
                account_id,
                watch.cursor,
            )
            self._watches.set_sync_pending(account_id, True)
            raise

        if watch.sync_pending != result.has_more:
            self._watches.set_sync_pending(account_id, result.has_more)
        return result

    def _sync_delta(self, account_id: str, watch: WatchSubscription) -> SyncResult:
        records, latest_cursor = self._fetch_history(account_id, watch)
        result = SyncResult(account_id=account_id, previous_cursor=watch.cursor)

        max_items = max(1, watch.tuning.max_items_per_delivery)
        delay = watch.tuning.inter_delivery_delay_ms / 1000.0
        seen: set[str] = set()
        fetches = 0
        checkpoint: Optional[str] = None

        for record in records:
            message_ids = self._added_message_ids(watch, record, seen, result.filtered_message_ids)
            outstanding = [
                mid for mid in message_ids if not self._ledger.is_processed(account_id, mid)
            ]
            if fetches > 0 and fetches + len(outstanding) > max_items:
                result.has_more = True
                break

            for message_id in message_ids:
                if self._ledger.is_processed(account_id, message_id):
                    result.skipped_message_ids.append(message_id)
                    continue
                if fetches > 0 and delay > 0:
                    self._sleep(delay)
                fetches += 1
                if self._deliver(account_id, message_id):
                    result.processed_message_ids.append(message_id)
                else:
                    result.skipped_message_ids.append(message_id)

            checkpoint = str(record.get("id") or checkpoint or watch.cursor)

        result.new_cursor = checkpoint if result.has_more else latest_cursor
        result.cursor_advanced = self._watches.advance_cursor(account_id, result.new_cursor)

        logger.info(
            "Synced account %s: %d processed, %d skipped, %d filtered, cursor %s -> %s%s",
            account_id,
            len(result.processed_message_ids),
            len(result.skipped_message_ids),
            len(result.filtered_message_ids),
            result.previous_cursor,
            result.new_cursor,
            " (more pending)" if result.has_more else "",
        )
        return result

    def _fetch_history(
        self, account_id: str, watch: WatchSubscription
    ) -> tuple[list[dict[str, Any]], str]:
        records: list[dict[str, Any]] = []
        latest = watch.cursor
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": watch.cursor,
                "historyTypes": ["messageAdded"],
                "maxResults": self._page_size,
            }
            # history.list filters on a single label; anything else is
            # filtered here per message.
            if watch.label_filter_behavior == "include" and len(watch.label_ids) == 1:
                params["labelId"] = watch.label_ids[0]
            if page_token:
                params["pageToken"] = page_token

            try:
                response = self._session.execute(
                    account_id,
                    "users.history.list",
                    lambda service: service.users().history().list(**params),
                )
            except ProviderRejectedError as e:
                if e.status_code == 404:
                    self._rebaseline(account_id, watch.cursor, e)
                raise

            records.extend(response.get("history", []))
            latest = str(response.get("historyId") or latest)
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return records, latest

    def _rebaseline(self, account_id: str, stale_cursor: str, cause: Exception) -> None:
        logger.error(
            "History cursor %s of account %s is no longer valid; re-baselining. "
            "Messages added since the last checkpoint may be unrecoverable.",
            stale_cursor,
            account_id,
        )
        self._watches.record_cursor_gone(account_id)
        subscription = self._registrar.ensure_watch(account_id)
        raise CursorGoneError(account_id, stale_cursor, subscription.cursor) from cause

    @staticmethod
    def matches_labels(watch: WatchSubscription, label_ids: Optional[list[str]]) -> bool:
        """Whether a message with label_ids falls under the watch's label filter.

        Messages whose labels are unknown are kept. Mail the owner sent or
        drafted is dropped unless it also reached the inbox.
        """
        if label_ids is None:
            return True
        labels = set(label_ids)
        watched = set(watch.label_ids)
        if watch.label_filter_behavior == "exclude":
            if labels & watched:
                return False
        elif watched and not labels & watched:
            return False
        return "INBOX" in labels or not labels & OUTGOING_LABELS

    def _added_message_ids(
        self,
        watch: WatchSubscription,
        record: dict[str, Any],
        seen: set[str],
        filtered: list[str],
    ) -> list[str]:
        message_ids = []
        for added in record.get("messagesAdded", []):
            message = added.get("message", {})
            message_id = message.get("id")
            if not message_id or message_id in seen:
                continue
            seen.add(message_id)
            if not self.matches_labels(watch, message.get("labelIds")):
                filtered.append(message_id)
                continue
            message_ids.append(message_id)
        return message_ids

    def _deliver(self, account_id: str, message_id: str) -> bool:
        """Fetch one message and hand it to the consumer.

        Returns:
            False if the message was deleted before it could be fetched.
        """
        params: dict[str, Any] = {
            "userId": "me",
            "id": message_id,
            "format": self._consumer.message_format,
        }
        if params["format"] == "metadata":
            params["metadataHeaders"] = METADATA_HEADERS
        try:
            message = self._session.execute(
                account_id,
                "users.messages.get",
                lambda service: service.users().messages().get(**params),
            )
        except ProviderRejectedError as e:
            if e.status_code == 404:
                logger.info(
                    "Message %s of account %s was deleted before it could be fetched",
                    message_id,
                    account_id,
                )
                self._ledger.mark_processed(account_id, message_id)
                return False
            raise

        content = parse_message(message)
        self._consumer.consume(account_id, message_id, content)
        self._ledger.mark_processed(account_id, message_id)
        return True
