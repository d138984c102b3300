"""RenewalScheduler: keeps every account's Gmail watch alive."""

import logging
import threading
from concurrent.futures import Future, wait
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mailwatch.exceptions import (
    AccountNotFoundError,
    CursorGoneError,
    ExhaustedError,
    MailWatchError,
    NeedsReauthError,
    OAuthClientRejectedError,
    ProviderRejectedError,
    TransientError,
)
from mailwatch.gmail import GmailSession
from mailwatch.store import (
    Credential,
    CredentialStore,
    InactiveReason,
    WatchStore,
    WatchSubscription,
    utcnow,
)
from mailwatch.sync import HistorySyncer
from mailwatch.watch import WatchRegistrar
from mailwatch.work_queue import AccountWorkQueue

from .models import RenewalOutcome, TickReport, WatchState, classify_watch

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "watch-renewal"
CREDENTIAL_CHECK_JOB_ID = "credential-check"
SYNC_RETRY_JOB_ID = "sync-retry"
FINAL_ATTEMPT_JOB_PREFIX = "final-renewal:"

# Inactive reasons that only a fresh consent grant can clear
_REGRANT_REASONS = (InactiveReason.NEEDS_REAUTH, InactiveReason.PROVIDER_REJECTED)


def _job_listener(event):
    """Log job execution results."""
    if event.exception:
        logger.error(
            "Scheduled job %s failed: %s", event.job_id, event.exception, exc_info=event.traceback
        )
    else:
        logger.debug("Scheduled job %s completed", event.job_id)


class RenewalScheduler:
    """Periodically renews Gmail watches before their 7-day expiry.

    Each tick classifies every account's watch (see classify_watch) and
    queues work on the account's serialized work queue:
    - NEAR_EXPIRY / EXPIRED: catch-up sync until the backlog is drained,
      then users.watch again
    - NO_WATCH: (re)establish when the account is allowed to be watched

    users.watch replaces the history cursor. A backlog that cannot be drained
    first (too large, or the catch-up kept failing) is logged as a gap and
    listed in TickReport.backlog_gaps.

    Failure handling per account:
    - NeedsReauthError: watch marked inactive until the owner grants
      consent again (granted_at later than deactivated_at)
    - ProviderRejectedError: same, a permanent rejection waits for a re-grant
    - OAuthClientRejectedError, TransientError, ExhaustedError: left as-is
      for the next tick, plus one final attempt shortly before expiry; a
      watch already past expiry is marked inactive and re-established by
      later ticks

    Besides the renewal tick, two more periodic jobs run:
    - check_credentials() checks every grant with users.getProfile
    - retry_pending_syncs() drains syncs a failure or the delivery cap left
      unfinished (sync_pending on the watch)

    Each tick also prunes processed-message ledger entries older than
    ledger_retention.

    Ticks that overrun their period are skipped by APScheduler
    (max_instances=1, coalesce=True).

    Example:
        scheduler = RenewalScheduler(credentials, watches, registrar, syncer, session, queue)
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        watch_store: WatchStore,
        registrar: WatchRegistrar,
        syncer: HistorySyncer,
        session: GmailSession,
        work_queue: AccountWorkQueue,
        renewal_window: timedelta = timedelta(hours=24),
        tick_interval: timedelta = timedelta(hours=6),
        final_attempt_lead: timedelta = timedelta(minutes=30),
        credential_check_interval: timedelta = timedelta(hours=12),
        sync_retry_interval: timedelta = timedelta(minutes=5),
        ledger_retention: timedelta = timedelta(days=8),
        catch_up_passes: int = 20,
        scheduler: Optional[BackgroundScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the scheduler.

        Args:
            credential_store: Source of connected accounts and grant times.
            watch_store: Source of watch subscriptions.
            registrar: Renews and re-establishes watches.
            syncer: Runs the catch-up sync before a renewal.
            session: Used for the credential health check.
            work_queue: Per-account serialized queue all work goes through.
            renewal_window: Renew watches expiring within this window.
            tick_interval: Period between renewal ticks.
            final_attempt_lead: Final attempt runs this long before expiry.
            credential_check_interval: Period of the credential health check.
            sync_retry_interval: Period of the pending sync retry job.
            ledger_retention: Processed-message entries older than this are
                pruned on every tick.
            catch_up_passes: Most sync calls spent draining the backlog
                before a renewal replaces the cursor.
            scheduler: APScheduler instance. Defaults to a UTC BackgroundScheduler.
            clock: Current-time source.
        """
        self._credentials = credential_store
        self._watches = watch_store
        self._registrar = registrar
        self._syncer = syncer
        self._session = session
        self._queue = work_queue
        self._renewal_window = renewal_window
        self._tick_interval = tick_interval
        self._final_attempt_lead = final_attempt_lead
        self._credential_check_interval = credential_check_interval
        self._sync_retry_interval = sync_retry_interval
        self._ledger_retention = ledger_retention
        self._catch_up_passes = max(1, catch_up_passes)
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._clock = clock
        self._started = False
        self._gaps_lock = threading.Lock()
        self._backlog_gaps: set[str] = set()

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    def start(self) -> None:
        """Register the periodic jobs and start the background scheduler.

        The first renewal tick runs immediately so watches that lapsed while
        the service was down are picked up at once.
        """
        if self._started:
            return
        self._scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self._tick_interval.total_seconds()),
            id=RENEWAL_JOB_ID,
            name="Gmail watch renewal",
            next_run_time=self._clock(),
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.check_credentials,
            IntervalTrigger(seconds=self._credential_check_interval.total_seconds()),
            id=CREDENTIAL_CHECK_JOB_ID,
            name="Gmail credential health check",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.retry_pending_syncs,
            IntervalTrigger(seconds=self._sync_retry_interval.total_seconds()),
            id=SYNC_RETRY_JOB_ID,
            name="Pending Gmail sync retry",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            "Renewal scheduler started (tick %s, window %s, credential check %s, sync retry %s)",
            self._tick_interval,
            self._renewal_window,
            self._credential_check_interval,
            self._sync_retry_interval,
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Renewal scheduler stopped")

    def _account_ids(self) -> list[str]:
        accounts = set(self._credentials.list_account_ids())
        accounts.update(subscription.account_id for subscription in self._watches.list_all())
        return sorted(accounts)

    def tick(self) -> TickReport:
        """Run one renewal pass over every account.

        Work is queued per account and awaited for at most one tick period;
        anything still running after that is reported as timed out and
        finishes in the background.

        Returns:
            TickReport with the outcome for each account that needed work.
        """
        now = self._clock()
        report = TickReport(started_at=now)
        futures: dict[str, Future] = {}

        for account_id in self._account_ids():
            report.checked += 1
            credential = self._credentials.get(account_id)
            watch = self._watches.get(account_id)
            action = self._plan(account_id, credential, watch, now)
            if action is None:
                continue
            if action is RenewalOutcome.NEEDS_REAUTH:
                self._watches.mark_inactive(account_id, InactiveReason.NEEDS_REAUTH)
                report.outcomes[account_id] = action
                continue
            catch_up = watch is not None and watch.is_active
            futures[account_id] = self._queue.submit(
                account_id,
                "watch renewal",
                self._renew,
                account_id,
                catch_up,
                False,
                coalesce_key="renew",
            )

        if futures:
            wait(futures.values(), timeout=self._tick_interval.total_seconds())
        for account_id, future in futures.items():
            if not future.done():
                report.timed_out.append(account_id)
            elif future.exception() is None:
                report.outcomes[account_id] = future.result()

        with self._gaps_lock:
            report.backlog_gaps = sorted(self._backlog_gaps)
            self._backlog_gaps.clear()
        report.pruned_ledger_entries = self._syncer.ledger.prune(now - self._ledger_retention)

        deactivated = sum(
            len(report.accounts_with(outcome))
            for outcome in (
                RenewalOutcome.EXPIRED,
                RenewalOutcome.NEEDS_REAUTH,
                RenewalOutcome.PROVIDER_REJECTED,
            )
        )
        logger.info(
            "Renewal tick checked %d accounts: %d renewed, %d deferred, %d deactivated, "
            "%d still running, %d with history gaps, %d ledger entries pruned",
            report.checked,
            len(report.accounts_with(RenewalOutcome.RENEWED)),
            len(report.accounts_with(RenewalOutcome.DEFERRED)),
            deactivated,
            len(report.timed_out),
            len(report.backlog_gaps),
            report.pruned_ledger_entries,
        )
        return report

    def _plan(
        self,
        account_id: str,
        credential: Optional[Credential],
        watch: Optional[WatchSubscription],
        now: datetime,
    ) -> Optional[RenewalOutcome]:
        """Decide what an account needs this tick.

        Returns:
            None for no work, NEEDS_REAUTH to deactivate without calling
            Gmail, or RENEWED to queue a renewal.
        """
        if credential is None:
            if watch is not None and watch.is_active:
                logger.warning("Account %s has an active watch but no credential", account_id)
            return None

        state = classify_watch(watch, now, self._renewal_window)

        if credential.needs_reauth:
            if state is not WatchState.NO_WATCH:
                return RenewalOutcome.NEEDS_REAUTH
            return None

        if state is WatchState.ACTIVE:
            return None
        if state in (WatchState.NEAR_EXPIRY, WatchState.EXPIRED):
            return RenewalOutcome.RENEWED

        # NO_WATCH
        if watch is None or watch.inactive_reason is InactiveReason.EXPIRED:
            return RenewalOutcome.RENEWED
        if watch.inactive_reason in _REGRANT_REASONS:
            if (
                credential.granted_at is not None
                and watch.deactivated_at is not None
                and credential.granted_at > watch.deactivated_at
            ):
                logger.info("Account %s was re-authorized, re-establishing its watch", account_id)
                return RenewalOutcome.RENEWED
            return None
        return None

    def _renew(self, account_id: str, catch_up: bool, final: bool) -> RenewalOutcome:
        """Renew one account's watch. Runs on the account's work queue."""
        drained = True
        if catch_up:
            stop, drained = self._catch_up(account_id)
            if stop is not None:
                return stop
        previous = self._watches.get(account_id) if not drained else None

        try:
            subscription = self._registrar.ensure_watch(account_id)
        except (NeedsReauthError, AccountNotFoundError) as e:
            return self._deactivate(account_id, InactiveReason.NEEDS_REAUTH, e)
        except OAuthClientRejectedError as e:
            return self._defer(account_id, e, final)
        except ProviderRejectedError as e:
            return self._deactivate(account_id, InactiveReason.PROVIDER_REJECTED, e)
        except (TransientError, ExhaustedError) as e:
            return self._defer(account_id, e, final)

        if previous is not None and previous.cursor != subscription.cursor:
            logger.error(
                "Watch for account %s renewed before its history backlog was drained: "
                "cursor moved from %s to %s, messages added in between were not processed",
                account_id,
                previous.cursor,
                subscription.cursor,
            )
            with self._gaps_lock:
                self._backlog_gaps.add(account_id)
        return RenewalOutcome.RENEWED

    def _catch_up(self, account_id: str) -> tuple[Optional[RenewalOutcome], bool]:
        """Sync until nothing is left before the renewal replaces the cursor.

        Stops after catch_up_passes sync calls, or once the watch is within
        final_attempt_lead of expiring so the renewal itself is not lost.

        Returns:
            (outcome, drained). outcome is set when the renewal must stop
            here; drained tells whether the whole backlog was processed.
        """
        watch = self._watches.get(account_id)
        deadline = None
        if watch is not None:
            cutoff = watch.expires_at - self._final_attempt_lead
            if cutoff > self._clock():
                deadline = cutoff

        for passes in range(1, self._catch_up_passes + 1):
            try:
                result = self._syncer.sync(account_id)
            except CursorGoneError:
                # The syncer already re-registered the watch
                return RenewalOutcome.RENEWED, True
            except NeedsReauthError as e:
                return self._deactivate(account_id, InactiveReason.NEEDS_REAUTH, e), True
            except MailWatchError as e:
                logger.warning(
                    "Catch-up sync before renewal failed for account %s: %s", account_id, e
                )
                return None, False
            if not result.has_more:
                return None, True
            if deadline is not None and self._clock() >= deadline:
                break

        logger.warning(
            "Catch-up sync for account %s still has history left after %d passes",
            account_id,
            passes,
        )
        return None, False

    def _deactivate(
        self, account_id: str, reason: InactiveReason, error: Exception
    ) -> RenewalOutcome:
        logger.warning(
            "Watch renewal for account %s stopped (%s): %s", account_id, reason.value, error
        )
        self._watches.mark_inactive(account_id, reason)
        self._cancel_final_attempt(account_id)
        if reason is InactiveReason.PROVIDER_REJECTED:
            return RenewalOutcome.PROVIDER_REJECTED
        return RenewalOutcome.NEEDS_REAUTH

    def _defer(self, account_id: str, error: Exception, final: bool) -> RenewalOutcome:
        now = self._clock()
        watch = self._watches.get(account_id)
        if watch is not None and watch.is_active and watch.expires_at <= now:
            logger.error(
                "Watch for account %s expired at %s and could not be renewed: %s",
                account_id,
                watch.expires_at.isoformat(),
                error,
            )
            self._watches.mark_inactive(account_id, InactiveReason.EXPIRED)
            return RenewalOutcome.EXPIRED

        logger.warning(
            "Watch renewal for account %s deferred to the next tick: %s", account_id, error
        )
        if watch is not None and watch.is_active and not final:
            self._schedule_final_attempt(account_id, watch.expires_at)
        return RenewalOutcome.DEFERRED

    def _schedule_final_attempt(self, account_id: str, expires_at: datetime) -> None:
        now = self._clock()
        run_at = max(expires_at - self._final_attempt_lead, now + timedelta(minutes=1))
        if run_at >= expires_at:
            return
        self._scheduler.add_job(
            self._run_final_attempt,
            DateTrigger(run_date=run_at),
            args=[account_id],
            id=f"{FINAL_ATTEMPT_JOB_PREFIX}{account_id}",
            name=f"Final watch renewal for {account_id}",
            replace_existing=True,
            misfire_grace_time=int(self._final_attempt_lead.total_seconds()) or None,
        )
        logger.info(
            "Scheduled final renewal attempt for account %s at %s", account_id, run_at.isoformat()
        )

    def _cancel_final_attempt(self, account_id: str) -> None:
        job = self._scheduler.get_job(f"{FINAL_ATTEMPT_JOB_PREFIX}{account_id}")
        if job is not None:
            job.remove()

    def _run_final_attempt(self, account_id: str) -> Future:
        watch = self._watches.get(account_id)
        if watch is None or not watch.is_active:
            logger.info("Final renewal for account %s no longer needed", account_id)
            future: Future = Future()
            future.set_result(RenewalOutcome.SKIPPED)
            return future
        if classify_watch(watch, self._clock(), self._renewal_window) is WatchState.ACTIVE:
            logger.info("Watch for account %s was renewed in the meantime", account_id)
            future = Future()
            future.set_result(RenewalOutcome.SKIPPED)
            return future
        return self._queue.submit(
            account_id, "final watch renewal", self._renew, account_id, True, True,
            coalesce_key="renew",
        )

    def check_credentials(self) -> dict[str, str]:
        """Check every connected account's grant with users.getProfile.

        Refreshes tokens that are about to expire as a side effect. Accounts
        whose grant was revoked get their watch deactivated right away
        instead of waiting for the next renewal.

        Returns:
            Mapping of account ID to "ok", "needs_reauth" or "error".
        """
        futures: dict[str, Future] = {}
        results: dict[str, str] = {}
        for account_id in self._credentials.list_account_ids():
            credential = self._credentials.get(account_id)
            if credential is None:
                continue
            if credential.needs_reauth:
                results[account_id] = "needs_reauth"
                continue
            futures[account_id] = self._queue.submit(
                account_id,
                "credential check",
                self._check_credential,
                account_id,
                coalesce_key="credential-check",
            )

        if futures:
            wait(futures.values(), timeout=self._credential_check_interval.total_seconds())
        for account_id, future in futures.items():
            if future.done() and future.exception() is None:
                results[account_id] = future.result()
            else:
                results[account_id] = "error"

        logger.info(
            "Credential check: %d ok, %d need re-authorization",
            sum(1 for status in results.values() if status == "ok"),
            sum(1 for status in results.values() if status == "needs_reauth"),
        )
        return results

    def _check_credential(self, account_id: str) -> str:
        try:
            self._session.execute(
                account_id,
                "users.getProfile",
                lambda service: service.users().getProfile(userId="me"),
            )
        except NeedsReauthError as e:
            watch = self._watches.get(account_id)
            if watch is not None and watch.is_active:
                self._deactivate(account_id, InactiveReason.NEEDS_REAUTH, e)
            return "needs_reauth"
        except MailWatchError as e:
            logger.warning("Credential check for account %s failed: %s", account_id, e)
            return "error"
        return "ok"

    def retry_pending_syncs(self) -> dict[str, str]:
        """Drain syncs left unfinished by a failure or the delivery cap.

        Runs every sync_retry_interval so a delta abandoned after transient
        errors is processed even when no further notification arrives.

        Returns:
            Mapping of account ID to "drained", "pending" or "running".
        """
        futures: dict[str, Future] = {}
        for watch in self._watches.list_all():
            if not watch.is_active or not watch.sync_pending:
                continue
            futures[watch.account_id] = self._queue.submit(
                watch.account_id,
                "pending sync retry",
                self._drain_pending,
                watch.account_id,
                coalesce_key="sync",
            )
        if not futures:
            return {}

        wait(futures.values(), timeout=self._sync_retry_interval.total_seconds())
        results: dict[str, str] = {}
        for account_id, future in futures.items():
            if not future.done():
                results[account_id] = "running"
                continue
            watch = self._watches.get(account_id)
            pending = watch is not None and watch.is_active and watch.sync_pending
            results[account_id] = "pending" if pending else "drained"

        logger.info(
            "Pending sync retry: %d drained, %d still pending, %d running",
            sum(1 for status in results.values() if status == "drained"),
            sum(1 for status in results.values() if status == "pending"),
            sum(1 for status in results.values() if status == "running"),
        )
        return results

    def _drain_pending(self, account_id: str) -> None:
        for _ in range(self._catch_up_passes):
            try:
                result = self._syncer.sync(account_id)
            except CursorGoneError as e:
                logger.warning("%s", e)
                return
            except NeedsReauthError as e:
                self._deactivate(account_id, InactiveReason.NEEDS_REAUTH, e)
                return
            except MailWatchError as e:
                logger.warning("Retry of pending sync for account %s failed: %s", account_id, e)
                return
            if not result.has_more:
                return
