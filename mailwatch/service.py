"""MailWatchService - wires the watch manager's components together."""

import logging
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, Optional

from mailwatch.auth import ReauthNotifier, StoreReauthNotifier, TokenRefresher
from mailwatch.config import Settings
from mailwatch.exceptions import (
    AccountNotFoundError,
    CursorGoneError,
    ExhaustedError,
    MailWatchError,
    NeedsReauthError,
    ProviderRejectedError,
    TransientError,
)
from mailwatch.executor import RateLimitedExecutor
from mailwatch.gmail import GmailSession
from mailwatch.scheduler import RenewalScheduler, TickReport
from mailwatch.store import (
    Credential,
    CredentialStore,
    DeliveryTuning,
    DocumentStore,
    InactiveReason,
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    ProcessedMessageLedger,
    StoreProcessedMessageLedger,
    WatchStore,
    WatchSubscription,
    utcnow,
)
from mailwatch.sync import HistorySyncer, MessageConsumer, SyncResult, TodoSuggestionConsumer
from mailwatch.watch import WatchRegistrar
from mailwatch.webhook import (
    DedupeCache,
    InboundNotification,
    IngestResult,
    PushVerifier,
    WebhookIngestor,
)
from mailwatch.work_queue import AccountWorkQueue

logger = logging.getLogger(__name__)


class MailWatchService:
    """Entry point for connecting accounts, ingesting pushes and renewing watches.

    Every component is built from Settings unless injected. All Gmail work for
    an account goes through one AccountWorkQueue, so syncs, renewals and
    disconnects for the same account never overlap.

    Example:
        service = MailWatchService(Settings.from_env())
        service.start()
        service.connect_account("acct-1", credential)
        result = service.handle_push(envelope, authorization=header)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        document_store: Optional[DocumentStore] = None,
        executor: Optional[RateLimitedExecutor] = None,
        token_refresher: Optional[TokenRefresher] = None,
        session: Optional[GmailSession] = None,
        registrar: Optional[WatchRegistrar] = None,
        consumer: Optional[MessageConsumer] = None,
        ledger: Optional[ProcessedMessageLedger] = None,
        syncer: Optional[HistorySyncer] = None,
        work_queue: Optional[AccountWorkQueue] = None,
        scheduler: Optional[RenewalScheduler] = None,
        notifier: Optional[ReauthNotifier] = None,
        verifier: Optional[PushVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings or Settings()
        s = self._settings

        if document_store is None:
            document_store = (
                JsonFileDocumentStore(s.store_path) if s.store_path else InMemoryDocumentStore()
            )
        self._document_store = document_store
        self._clock = clock
        self._credentials = CredentialStore(document_store, clock=clock)
        self._watches = WatchStore(document_store, clock=clock)
        self._notifier = notifier or StoreReauthNotifier(document_store, clock=clock)

        self._executor = executor or RateLimitedExecutor(
            max_attempts=s.max_attempts,
            base_delay=s.base_backoff,
            max_delay=s.max_backoff,
            clock=clock,
        )
        self._token_refresher = token_refresher or TokenRefresher(
            self._credentials,
            self._executor,
            client_id=s.google_client_id,
            client_secret=s.google_client_secret,
            token_uri=s.token_uri,
            safety_margin=s.token_safety_margin,
            notifier=self._notifier,
            clock=clock,
        )
        self._session = session or GmailSession(
            self._token_refresher, self._executor, call_deadline=s.call_deadline
        )
        self._registrar = registrar or WatchRegistrar(
            self._session,
            self._watches,
            topic_name=s.pubsub_topic,
            label_ids=s.watch_label_ids,
            label_filter_behavior=s.label_filter_behavior,
            tuning=DeliveryTuning(
                max_items_per_delivery=s.max_items_per_delivery,
                inter_delivery_delay_ms=s.inter_delivery_delay_ms,
            ),
            clock=clock,
        )
        self._syncer = syncer or HistorySyncer(
            self._session,
            self._watches,
            self._registrar,
            consumer or TodoSuggestionConsumer(
                document_store,
                require_known_contact=s.require_known_contact,
                mirror_messages=s.mirror_messages,
                clock=clock,
            ),
            ledger=ledger or StoreProcessedMessageLedger(document_store, clock=clock),
        )
        self._queue = work_queue or AccountWorkQueue(max_workers=s.workers)
        self._scheduler = scheduler or RenewalScheduler(
            self._credentials,
            self._watches,
            self._registrar,
            self._syncer,
            self._session,
            self._queue,
            renewal_window=s.renewal_window,
            tick_interval=s.renewal_tick,
            final_attempt_lead=s.final_attempt_lead,
            credential_check_interval=s.credential_check_interval,
            sync_retry_interval=s.sync_retry_interval,
            ledger_retention=s.ledger_retention,
            catch_up_passes=s.catch_up_passes,
            clock=clock,
        )
        self._verifier = verifier
        self._ingestor: Optional[WebhookIngestor] = None
        self._started = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def credential_store(self) -> CredentialStore:
        return self._credentials

    @property
    def watch_store(self) -> WatchStore:
        return self._watches

    @property
    def work_queue(self) -> AccountWorkQueue:
        return self._queue

    def _get_verifier(self) -> PushVerifier:
        if self._verifier is None:
            s = self._settings
            self._verifier = PushVerifier(
                audience=s.push_audience,
                service_account_email=s.push_service_account,
                shared_token=s.push_token,
                allow_unverified=s.allow_unverified_push,
            )
        return self._verifier

    def _get_ingestor(self) -> WebhookIngestor:
        if self._ingestor is None:
            self._ingestor = WebhookIngestor(
                self._get_verifier(),
                self._credentials,
                self._watches,
                self._enqueue_notification,
                dedupe=DedupeCache(window=self._settings.dedupe_window, clock=self._clock),
            )
        return self._ingestor

    # Lifecycle

    def start(self) -> None:
        """Start the renewal scheduler. Push verification is checked eagerly."""
        if self._started:
            return
        self._get_ingestor()
        self._scheduler.start()
        self._started = True
        logger.info("Mail watch service started")

    def stop(self) -> None:
        """Stop scheduling and let queued work finish."""
        self._scheduler.shutdown()
        self._queue.shutdown(wait=True)
        self._started = False
        logger.info("Mail watch service stopped")

    # Accounts

    def connect_account(self, account_id: str, credential: Credential) -> WatchSubscription:
        """Store a fresh consent grant and start watching the mailbox.

        Args:
            account_id: Account the grant belongs to.
            credential: Tokens from the consent flow.

        Returns:
            The active WatchSubscription.

        Raises:
            NeedsReauthError: If the grant turns out to be unusable.
            ProviderRejectedError: If Gmail refuses the watch.
            ExhaustedError: If Gmail kept failing transiently.
        """
        self._credentials.grant(account_id, credential)
        self._notifier.clear(account_id)
        return self._queue.submit(
            account_id, "connect account", self._connect, account_id
        ).result()

    def _connect(self, account_id: str) -> WatchSubscription:
        profile = self._session.execute(
            account_id,
            "users.getProfile",
            lambda service: service.users().getProfile(userId="me"),
        )
        email_address = profile.get("emailAddress", "")
        credential = self._credentials.get(account_id)
        if email_address and credential and credential.email_address != email_address.lower():
            self._credentials.set_email_address(account_id, email_address)
        return self._registrar.ensure_watch(account_id)

    def ensure_watch(self, account_id: str) -> WatchSubscription:
        """(Re)register the account's watch on its work queue and wait for it.

        Raises:
            AccountNotFoundError: If the account never connected.
        """
        if self._credentials.get(account_id) is None:
            raise AccountNotFoundError(account_id)
        return self._queue.submit(
            account_id, "ensure watch", self._registrar.ensure_watch, account_id
        ).result()

    def disconnect_account(self, account_id: str) -> None:
        """Stop the Gmail watch and forget the account's credential."""
        if self._credentials.get(account_id) is not None:
            future = self._queue.submit(
                account_id, "disconnect account", self._registrar.stop_watch, account_id
            )
            try:
                future.result()
            except MailWatchError as e:
                logger.warning(
                    "Gmail watch for account %s could not be stopped cleanly: %s", account_id, e
                )
        self._watches.mark_inactive(account_id, InactiveReason.DISCONNECTED)
        self._credentials.delete(account_id)
        logger.info("Disconnected account %s", account_id)

    # Sync

    def enqueue_sync(self, account_id: str) -> Future:
        """Queue a sync for the account and return without waiting.

        A sync already waiting in the account's queue absorbs this request.
        """
        return self._queue.submit(
            account_id, "history sync", self._run_sync, account_id, coalesce_key="sync"
        )

    def _enqueue_notification(self, notification: InboundNotification) -> Future:
        return self.enqueue_sync(notification.account_id)

    def _run_sync(self, account_id: str) -> Optional[SyncResult]:
        try:
            result = self._syncer.sync(account_id)
        except CursorGoneError as e:
            logger.warning("%s", e)
            return None
        except NeedsReauthError as e:
            logger.warning("Sync for account %s stopped: %s", account_id, e)
            self._watches.mark_inactive(account_id, InactiveReason.NEEDS_REAUTH)
            return None
        except (ExhaustedError, TransientError) as e:
            logger.warning(
                "Sync for account %s failed, left pending for the sync retry job: %s",
                account_id,
                e,
            )
            return None
        except ProviderRejectedError as e:
            logger.error("Gmail rejected the sync for account %s: %s", account_id, e)
            return None

        if result.has_more:
            self.enqueue_sync(account_id)
        return result

    def sync_now(self, account_id: str) -> SyncResult:
        """Run one sync on the account's work queue and wait for the result.

        Unlike enqueue_sync, errors are raised to the caller.
        """
        if self._credentials.get(account_id) is None:
            raise AccountNotFoundError(account_id)
        return self._queue.submit(account_id, "manual sync", self._syncer.sync, account_id).result()

    # Push notifications

    def handle_push(
        self,
        envelope: Any,
        authorization: Optional[str] = None,
        token: Optional[str] = None,
    ) -> IngestResult:
        """Ingest one Pub/Sub push delivery. Returns without waiting for the sync."""
        return self._get_ingestor().on_notification(
            envelope, authorization=authorization, token=token
        )

    def verify_challenge_token(self, token: Optional[str]) -> bool:
        return self._get_verifier().verify_challenge_token(token)

    # Scheduling

    def renew_once(self) -> TickReport:
        """Run a single renewal tick synchronously."""
        return self._scheduler.tick()

    def check_credentials(self) -> dict[str, str]:
        """Run a single credential health check synchronously."""
        return self._scheduler.check_credentials()

    def retry_pending_syncs(self) -> dict[str, str]:
        """Retry every unfinished sync once, synchronously."""
        return self._scheduler.retry_pending_syncs()

    def health(self) -> dict[str, Any]:
        """Summary of the service state for the health endpoint."""
        watches = self._watches.list_all()
        needs_reauth = 0
        for account_id in self._credentials.list_account_ids():
            credential = self._credentials.get(account_id)
            if credential is not None and credential.needs_reauth:
                needs_reauth += 1
        return {
            "status": "ok",
            "scheduler_running": self._started,
            "accounts": len(self._credentials.list_account_ids()),
            "active_watches": sum(1 for watch in watches if watch.is_active),
            "inactive_watches": sum(1 for watch in watches if not watch.is_active),
            "needs_reauth": needs_reauth,
        }
