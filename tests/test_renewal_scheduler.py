"""Unit tests for the watch renewal state machine and scheduler."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from mailwatch.exceptions import ExhaustedError, NeedsReauthError, OAuthClientRejectedError
from mailwatch.scheduler import (
    CREDENTIAL_CHECK_JOB_ID,
    RENEWAL_JOB_ID,
    SYNC_RETRY_JOB_ID,
    RenewalOutcome,
    RenewalScheduler,
    TickReport,
    WatchState,
    classify_watch,
)
from mailwatch.store import (
    Credential,
    DeliveryTuning,
    InactiveReason,
    InMemoryProcessedMessageLedger,
    WatchSubscription,
)
from mailwatch.sync import HistorySyncer
from mailwatch.watch import WatchRegistrar
from mailwatch.work_queue import AccountWorkQueue
from tests.gmail_test_helpers import (
    START,
    RecordingSleep,
    history_record,
    make_http_error,
    metadata_message,
)

WINDOW = timedelta(hours=24)


def grant(credential_store, account_id, clock, email_address=None):
    return credential_store.grant(
        account_id,
        Credential(
            access_token="access-1",
            expires_at=clock() + timedelta(hours=1),
            refresh_token="refresh-1",
            email_address=email_address or f"{account_id}@example.com",
        ),
    )


@pytest.fixture
def registrar(session, watch_store, clock):
    return WatchRegistrar(
        session,
        watch_store,
        topic_name="projects/acme/topics/gmail-push",
        tuning=DeliveryTuning(max_items_per_delivery=3, inter_delivery_delay_ms=0),
        clock=clock,
    )


@pytest.fixture
def consumer():
    return MagicMock(message_format="metadata")


@pytest.fixture
def syncer(session, watch_store, registrar, consumer, clock):
    return HistorySyncer(
        session,
        watch_store,
        registrar,
        consumer,
        ledger=InMemoryProcessedMessageLedger(clock=clock),
        sleep=RecordingSleep(),
    )


@pytest.fixture
def work_queue():
    queue = AccountWorkQueue(max_workers=2)
    yield queue
    queue.shutdown(wait=True)


@pytest.fixture
def make_renewal(credential_store, watch_store, registrar, syncer, session, work_queue, clock):
    def make(**overrides):
        options = dict(
            renewal_window=WINDOW,
            tick_interval=timedelta(seconds=30),
            final_attempt_lead=timedelta(minutes=30),
            sync_retry_interval=timedelta(seconds=30),
            scheduler=BackgroundScheduler(timezone="UTC"),
            clock=clock,
        )
        options.update(overrides)
        return RenewalScheduler(
            credential_store, watch_store, registrar, syncer, session, work_queue, **options
        )

    return make


@pytest.fixture
def renewal(make_renewal):
    return make_renewal()


def queue_backlog(gmail, count, latest="2000"):
    """Queue `count` new INBOX messages as consecutive history records from 1001.

    One users.history.list response is queued per sync call at three messages
    per call, each holding the records after that call's checkpoint.
    """
    records = [history_record(str(1001 + i), f"m{i}") for i in range(count)]
    gmail.messages.update({f"m{i}": metadata_message(f"m{i}", f"subject {i}") for i in range(count)})
    start = 0
    while start < count:
        gmail.queue("users.history.list", {"history": records[start:], "historyId": latest})
        start += 3


@pytest.fixture
def watched(stored_credential, registrar):
    """acct-1 connected and watched at START, expiring START + 7 days."""
    return registrar.ensure_watch("acct-1")


def subscription(expires_in, is_active=True):
    return WatchSubscription(
        account_id="acct-1", cursor="1", expires_at=START + expires_in, is_active=is_active
    )


class TestClassifyWatch:
    """Tests for classify_watch()."""

    @pytest.mark.parametrize(
        "watch, expected",
        [
            (None, WatchState.NO_WATCH),
            (subscription(timedelta(days=3), is_active=False), WatchState.NO_WATCH),
            (subscription(timedelta(days=3)), WatchState.ACTIVE),
            (subscription(timedelta(hours=10)), WatchState.NEAR_EXPIRY),
            (subscription(timedelta(hours=24)), WatchState.NEAR_EXPIRY),
            (subscription(timedelta(0)), WatchState.EXPIRED),
            (subscription(-timedelta(hours=1)), WatchState.EXPIRED),
        ],
    )
    def test_states(self, watch, expected):
        """Test classifying watches into renewal states."""
        assert classify_watch(watch, START, WINDOW) is expected


class TestTick:
    """Tests for RenewalScheduler.tick()."""

    def test_far_from_expiry_is_untouched(self, renewal, watched, gmail):
        """Test far from expiry is untouched."""
        calls_before = len(gmail.calls)

        report = renewal.tick()

        assert report.checked == 1
        assert report.outcomes == {}
        assert len(gmail.calls) == calls_before

    def test_near_expiry_syncs_then_renews(self, renewal, watched, gmail, watch_store, clock):
        """Test near expiry syncs then renews."""
        clock.advance(days=6, hours=14)

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        stored = watch_store.get("acct-1")
        assert stored.expires_at == clock() + timedelta(days=7)
        assert stored.is_active
        names = [name for name, _ in gmail.calls]
        assert names[-2:] == ["users.history.list", "users.watch"]

    def test_connected_account_without_watch_is_established(
        self, renewal, stored_credential, gmail, watch_store
    ):
        """Test connected account without watch is established."""
        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        assert watch_store.get("acct-1").is_active
        assert gmail.calls_to("users.history.list") == []

    def test_watch_without_credential_is_left_alone(
        self, renewal, watched, credential_store, gmail, clock
    ):
        """Test watch without credential is left alone."""
        credential_store.delete("acct-1")
        clock.advance(days=6, hours=14)
        calls_before = len(gmail.calls)

        report = renewal.tick()

        assert report.outcomes == {}
        assert len(gmail.calls) == calls_before

    def test_flagged_credential_deactivates_without_calling_gmail(
        self, renewal, watched, credential_store, watch_store, gmail
    ):
        """Test flagged credential deactivates without calling gmail."""
        credential_store.mark_needs_reauth("acct-1", "invalid_grant")
        calls_before = len(gmail.calls)

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.NEEDS_REAUTH}
        assert watch_store.get("acct-1").inactive_reason is InactiveReason.NEEDS_REAUTH
        assert len(gmail.calls) == calls_before

    def test_revoked_grant_stops_renewal_until_regranted(
        self, renewal, watched, token_refresher, credential_store, watch_store, gmail, clock
    ):
        """Test revoked grant stops renewal until regranted."""
        clock.advance(days=6, hours=14)
        token_refresher.get_valid_access_token.side_effect = NeedsReauthError(
            "acct-1", "invalid_grant"
        )

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.NEEDS_REAUTH}
        stored = watch_store.get("acct-1")
        assert stored.is_active is False
        assert stored.inactive_reason is InactiveReason.NEEDS_REAUTH

        calls_before = len(gmail.calls)
        assert renewal.tick().outcomes == {}
        assert len(gmail.calls) == calls_before

        clock.advance(minutes=5)
        token_refresher.get_valid_access_token.side_effect = None
        grant(credential_store, "acct-1", clock, "owner@example.com")

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        assert watch_store.get("acct-1").is_active

    def test_provider_rejection_waits_for_regrant(
        self, renewal, watched, watch_store, gmail, clock
    ):
        """Test provider rejection waits for regrant."""
        clock.advance(days=6, hours=14)
        gmail.queue("users.watch", make_http_error(400, "invalidArgument", "Invalid topicName"))

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.PROVIDER_REJECTED}
        assert watch_store.get("acct-1").inactive_reason is InactiveReason.PROVIDER_REJECTED
        assert renewal.tick().outcomes == {}

    def test_transient_failure_defers_and_schedules_final_attempt(
        self, renewal, watched, watch_store, gmail, clock
    ):
        """Test transient failure defers and schedules final attempt."""
        clock.advance(days=6, hours=14)
        expires_at = watched.expires_at
        gmail.queue("users.watch", *[make_http_error(503)] * 5)

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.DEFERRED}
        assert watch_store.get("acct-1").is_active
        job = renewal.scheduler.get_job("final-renewal:acct-1")
        assert job is not None
        assert job.trigger.run_date == expires_at - timedelta(minutes=30)

        clock.advance(hours=9, minutes=30)
        future = job.func(*job.args)

        assert future.result(5) is RenewalOutcome.RENEWED
        assert watch_store.get("acct-1").expires_at == clock() + timedelta(days=7)

    def test_final_attempt_skipped_when_already_renewed(self, renewal, watched, work_queue):
        """Test final attempt skipped when already renewed."""
        future = renewal._run_final_attempt("acct-1")
        assert future.result(5) is RenewalOutcome.SKIPPED

    def test_expired_watch_marked_expired_then_reestablished(
        self, renewal, watched, watch_store, gmail, clock
    ):
        """Test expired watch marked expired then reestablished."""
        clock.advance(days=7, hours=1)
        gmail.queue("users.watch", *[make_http_error(500)] * 5)

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.EXPIRED}
        stored = watch_store.get("acct-1")
        assert stored.is_active is False
        assert stored.inactive_reason is InactiveReason.EXPIRED
        assert renewal.scheduler.get_job("final-renewal:acct-1") is None

        gmail.history_id = 4200
        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        stored = watch_store.get("acct-1")
        assert stored.is_active
        assert stored.cursor == "4200"
        assert stored.expires_at == clock() + timedelta(days=7)

    def test_one_failing_account_does_not_block_others(
        self, renewal, credential_store, watch_store, registrar, token_refresher, clock
    ):
        """Test one failing account does not block others."""
        for account_id in ("acct-1", "acct-2"):
            grant(credential_store, account_id, clock)
            registrar.ensure_watch(account_id)
        clock.advance(days=6, hours=14)

        def tokens(account_id):
            if account_id == "acct-1":
                raise NeedsReauthError(account_id, "invalid_grant")
            return "access-1"

        token_refresher.get_valid_access_token.side_effect = tokens

        report = renewal.tick()

        assert report.outcomes == {
            "acct-1": RenewalOutcome.NEEDS_REAUTH,
            "acct-2": RenewalOutcome.RENEWED,
        }
        assert watch_store.get("acct-2").expires_at == clock() + timedelta(days=7)

    def test_rejected_oauth_client_defers_without_deactivating(
        self, renewal, watched, token_refresher, watch_store, clock
    ):
        """Test that a misconfigured OAuth client keeps the watch active for the next tick."""
        clock.advance(days=6, hours=14)
        token_refresher.get_valid_access_token.side_effect = OAuthClientRejectedError(
            "acct-1", "invalid_client", "invalid_client: Unauthorized"
        )

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.DEFERRED}
        stored = watch_store.get("acct-1")
        assert stored.is_active
        assert stored.inactive_reason is None
        assert report.backlog_gaps == []
        assert renewal.scheduler.get_job("final-renewal:acct-1") is not None


class TestCatchUp:
    """Tests for draining the history backlog before a renewal."""

    def test_backlog_larger_than_cap_is_drained_before_renewal(
        self, renewal, watched, gmail, watch_store, consumer, clock
    ):
        """Test that every capped sync pass runs before users.watch replaces the cursor."""
        clock.advance(days=6, hours=14)
        queue_backlog(gmail, 7)
        gmail.history_id = 2100

        calls_before = len(gmail.calls)
        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        assert report.backlog_gaps == []
        delivered = [c.args[1] for c in consumer.consume.call_args_list]
        assert delivered == [f"m{i}" for i in range(7)]
        names = [name for name, _ in gmail.calls]
        assert names[-2:] == ["users.messages.get", "users.watch"]
        assert names[calls_before:].count("users.watch") == 1
        starts = [call["startHistoryId"] for call in gmail.calls_to("users.history.list")]
        assert starts == ["1000", "1003", "1006"]
        stored = watch_store.get("acct-1")
        assert stored.cursor == "2100"
        assert stored.sync_pending is False

    def test_undrained_backlog_is_reported_as_gap(
        self, make_renewal, watched, gmail, watch_store, consumer, clock
    ):
        """Test that running out of passes before the renewal is reported, not hidden."""
        renewal = make_renewal(catch_up_passes=1)
        clock.advance(days=6, hours=14)
        queue_backlog(gmail, 5)
        gmail.history_id = 2100

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        assert report.backlog_gaps == ["acct-1"]
        assert consumer.consume.call_count == 3
        assert watch_store.get("acct-1").cursor == "2100"
        assert renewal.tick().backlog_gaps == []

    def test_failed_catch_up_is_reported_as_gap(
        self, renewal, watched, gmail, watch_store, clock
    ):
        """Test that a catch-up abandoned after transient errors still renews and reports the gap."""
        clock.advance(days=6, hours=14)
        gmail.queue("users.history.list", *[make_http_error(503)] * 5)
        gmail.history_id = 2100

        report = renewal.tick()

        assert report.outcomes == {"acct-1": RenewalOutcome.RENEWED}
        assert report.backlog_gaps == ["acct-1"]
        assert watch_store.get("acct-1").sync_pending is False


class TestPendingSyncRetry:
    """Tests for retry_pending_syncs()."""

    def test_abandoned_sync_is_retried(
        self, renewal, syncer, watched, gmail, watch_store, consumer
    ):
        """Test that a delta left behind by an outage is processed without a new notification."""
        gmail.queue("users.history.list", *[make_http_error(503)] * 5)
        with pytest.raises(ExhaustedError):
            syncer.sync("acct-1")
        assert watch_store.get("acct-1").sync_pending is True
        consumer.consume.assert_not_called()

        queue_backlog(gmail, 4)

        results = renewal.retry_pending_syncs()

        assert results == {"acct-1": "drained"}
        delivered = [c.args[1] for c in consumer.consume.call_args_list]
        assert delivered == ["m0", "m1", "m2", "m3"]
        stored = watch_store.get("acct-1")
        assert stored.sync_pending is False
        assert stored.cursor == "2000"

    def test_still_failing_sync_stays_pending(self, renewal, watch_store, watched, gmail):
        """Test that a retry that fails again leaves the flag for the next run."""
        watch_store.set_sync_pending("acct-1", True)
        gmail.queue("users.history.list", *[make_http_error(503)] * 5)

        assert renewal.retry_pending_syncs() == {"acct-1": "pending"}
        assert watch_store.get("acct-1").sync_pending is True

    def test_nothing_pending_makes_no_calls(self, renewal, watched, gmail, watch_store):
        """Test that watches without unfinished syncs are not touched."""
        watch_store.set_sync_pending("acct-1", False)
        calls_before = len(gmail.calls)

        assert renewal.retry_pending_syncs() == {}
        assert len(gmail.calls) == calls_before

    def test_inactive_watch_is_skipped(self, renewal, watched, gmail, watch_store):
        """Test that a deactivated watch is not retried even if it was left pending."""
        watch_store.set_sync_pending("acct-1", True)
        watch_store.mark_inactive("acct-1", InactiveReason.NEEDS_REAUTH)
        calls_before = len(gmail.calls)

        assert renewal.retry_pending_syncs() == {}
        assert len(gmail.calls) == calls_before


class TestLedgerPruning:
    """Tests for pruning the processed-message ledger on each tick."""

    def test_tick_prunes_old_entries(self, renewal, syncer, clock):
        """Test that entries older than the retention are dropped and recent ones kept."""
        syncer.ledger.mark_processed("acct-1", "old")
        clock.advance(days=9)
        syncer.ledger.mark_processed("acct-1", "recent")

        report = renewal.tick()

        assert report.pruned_ledger_entries == 1
        assert not syncer.ledger.is_processed("acct-1", "old")
        assert syncer.ledger.is_processed("acct-1", "recent")

    def test_retention_is_configurable(self, make_renewal, syncer, clock):
        """Test that a shorter retention prunes sooner."""
        renewal = make_renewal(ledger_retention=timedelta(days=1))
        syncer.ledger.mark_processed("acct-1", "m1")
        clock.advance(days=2)

        assert renewal.tick().pruned_ledger_entries == 1


class TestCheckCredentials:
    """Tests for check_credentials()."""

    def test_reports_and_deactivates_revoked(
        self, renewal, credential_store, watch_store, registrar, token_refresher, gmail, clock
    ):
        """Test reports and deactivates revoked."""
        for account_id in ("acct-1", "acct-2", "acct-3"):
            grant(credential_store, account_id, clock)
        registrar.ensure_watch("acct-3")
        credential_store.mark_needs_reauth("acct-2", "invalid_grant")

        def tokens(account_id):
            if account_id == "acct-3":
                raise NeedsReauthError(account_id, "invalid_grant")
            return "access-1"

        token_refresher.get_valid_access_token.side_effect = tokens

        results = renewal.check_credentials()

        assert results == {"acct-1": "ok", "acct-2": "needs_reauth", "acct-3": "needs_reauth"}
        assert watch_store.get("acct-3").inactive_reason is InactiveReason.NEEDS_REAUTH
        assert len(gmail.calls_to("users.getProfile")) == 1

    def test_outage_reported_as_error(self, renewal, stored_credential, gmail):
        """Test outage reported as error."""
        gmail.queue("users.getProfile", *[make_http_error(503)] * 5)
        assert renewal.check_credentials() == {"acct-1": "error"}


class TestLifecycle:
    """Tests for start() and shutdown()."""

    def test_registers_periodic_jobs(
        self, credential_store, watch_store, registrar, syncer, session, work_queue, clock
    ):
        """Test registers periodic jobs."""
        scheduler = MagicMock()
        renewal = RenewalScheduler(
            credential_store,
            watch_store,
            registrar,
            syncer,
            session,
            work_queue,
            tick_interval=timedelta(hours=6),
            scheduler=scheduler,
            clock=clock,
        )

        renewal.start()
        renewal.start()

        jobs = {c.kwargs["id"]: c for c in scheduler.add_job.call_args_list}
        assert set(jobs) == {RENEWAL_JOB_ID, CREDENTIAL_CHECK_JOB_ID, SYNC_RETRY_JOB_ID}
        retry_job = jobs[SYNC_RETRY_JOB_ID]
        assert retry_job.args[0] == renewal.retry_pending_syncs
        assert retry_job.args[1].interval == timedelta(minutes=5)
        assert retry_job.kwargs["max_instances"] == 1
        tick_job = jobs[RENEWAL_JOB_ID]
        assert tick_job.args[0] == renewal.tick
        assert tick_job.kwargs["next_run_time"] == clock()
        assert tick_job.kwargs["coalesce"] is True
        assert tick_job.kwargs["max_instances"] == 1
        scheduler.start.assert_called_once()

        renewal.shutdown()
        scheduler.shutdown.assert_called_once_with(wait=False)


def test_tick_report_to_dict():
    report = TickReport(started_at=START, checked=2)
    report.outcomes["acct-1"] = RenewalOutcome.RENEWED
    report.timed_out.append("acct-2")
    report.backlog_gaps.append("acct-3")
    report.pruned_ledger_entries = 4

    assert report.to_dict() == {
        "started_at": "2026-03-02T09:00:00+00:00",
        "checked": 2,
        "outcomes": {"acct-1": "renewed"},
        "timed_out": ["acct-2"],
        "backlog_gaps": ["acct-3"],
        "pruned_ledger_entries": 4,
    }
