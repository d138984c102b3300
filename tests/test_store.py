"""Unit tests for the persistence layer."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from mailwatch.auth.notifier import StoreReauthNotifier
from mailwatch.store import (
    Credential,
    CredentialStore,
    InactiveReason,
    InMemoryDocumentStore,
    InMemoryProcessedMessageLedger,
    JsonFileDocumentStore,
    StoreProcessedMessageLedger,
    WatchStore,
    WatchSubscription,
    cursor_value,
)
from mailwatch.store.document_store import merge_document


def make_subscription(clock, account_id="acct-1", cursor="100", **overrides):
    fields = dict(
        account_id=account_id,
        cursor=cursor,
        expires_at=clock() + timedelta(days=7),
        topic_name="projects/p/topics/gmail",
        label_ids=["INBOX"],
        established_at=clock(),
    )
    fields.update(overrides)
    return WatchSubscription(**fields)


class TestMergeDocument:
    """Tests for recursive document merges."""

    def test_nested_maps_merge(self):
        """Test nested maps merge."""
        base = {"a": 1, "tuning": {"x": 1, "y": 2}}
        merged = merge_document(base, {"tuning": {"y": 3}, "b": 2})
        assert merged == {"a": 1, "b": 2, "tuning": {"x": 1, "y": 3}}
        assert base == {"a": 1, "tuning": {"x": 1, "y": 2}}


class TestInMemoryDocumentStore:
    """Tests for the in-memory document store."""

    def test_get_missing(self):
        """Test get missing."""
        assert InMemoryDocumentStore().get("c", "missing") is None

    def test_merge_and_replace(self):
        """Test merge and replace."""
        store = InMemoryDocumentStore()
        store.set("c", "d", {"a": 1, "b": 1})
        store.set("c", "d", {"b": 2})
        assert store.get("c", "d") == {"a": 1, "b": 2}
        store.set("c", "d", {"c": 3}, merge=False)
        assert store.get("c", "d") == {"c": 3}

    def test_returns_copies(self):
        """Test returns copies."""
        store = InMemoryDocumentStore()
        store.set("c", "d", {"items": [1]})
        doc = store.get("c", "d")
        doc["items"].append(2)
        assert store.get("c", "d") == {"items": [1]}

    def test_where_and_delete(self):
        """Test where and delete."""
        store = InMemoryDocumentStore()
        store.batch_set([("c", "1", {"k": "a"}), ("c", "2", {"k": "b"})])
        assert store.where("c", k="b") == [("2", {"k": "b"})]
        store.delete("c", "2")
        store.delete("c", "2")
        assert store.list_ids("c") == ["1"]

    def test_batch_delete(self):
        """Test that batch_delete removes several documents and ignores missing ones."""
        store = InMemoryDocumentStore()
        store.batch_set([("c", "1", {}), ("c", "2", {}), ("c", "3", {})])
        store.batch_delete("c", ["1", "3", "missing"])
        assert store.list_ids("c") == ["2"]

    def test_where_without_filters_returns_everything(self):
        """Test that where() with no conditions lists the whole collection."""
        store = InMemoryDocumentStore()
        store.batch_set([("c", "1", {"k": "a"}), ("c", "2", {"k": "b"})])
        assert sorted(doc_id for doc_id, _ in store.where("c")) == ["1", "2"]


class TestJsonFileDocumentStore:
    """Tests for the JSON-file backed store."""

    def test_persists_across_instances(self, tmp_path):
        """Test persists across instances."""
        path = tmp_path / "state" / "store.json"
        store = JsonFileDocumentStore(path)
        store.set("gmail_watches", "acct-1", {"cursor": "5"})
        store.delete("gmail_watches", "missing")

        reloaded = JsonFileDocumentStore(path)
        assert reloaded.get("gmail_watches", "acct-1") == {"cursor": "5"}
        assert not list(path.parent.glob("*.tmp"))

    def test_batch_delete_is_persisted(self, tmp_path):
        """Test that a batch delete reaches the file in one write."""
        path = tmp_path / "store.json"
        store = JsonFileDocumentStore(path)
        store.batch_set([("c", "1", {}), ("c", "2", {}), ("c", "3", {})])

        with patch.object(store, "_flush", wraps=store._flush) as flush:
            store.batch_delete("c", ["1", "2"])

        flush.assert_called_once()
        assert JsonFileDocumentStore(path).list_ids("c") == ["3"]


class TestCredentialStore:
    """Tests for CredentialStore."""

    def test_grant_keeps_previous_refresh_token(self, credential_store, clock, stored_credential):
        """Test grant keeps previous refresh token."""
        clock.advance(days=1)
        credential_store.mark_needs_reauth("acct-1", "revoked")
        regrant = Credential(
            access_token="access-new",
            expires_at=clock() + timedelta(hours=1),
            email_address="Owner@Example.com",
        )
        credential_store.grant("acct-1", regrant)

        stored = credential_store.get("acct-1")
        assert stored.refresh_token == "refresh-1"
        assert stored.access_token == "access-new"
        assert stored.email_address == "owner@example.com"
        assert stored.needs_reauth is False
        assert stored.granted_at == clock()

    def test_update_tokens_keeps_refresh_token_unless_rotated(
        self, credential_store, clock, stored_credential
    ):
        """Test update tokens keeps refresh token unless rotated."""
        expires = clock() + timedelta(hours=2)
        credential_store.update_tokens("acct-1", "access-2", expires)
        stored = credential_store.get("acct-1")
        assert stored.access_token == "access-2"
        assert stored.expires_at == expires
        assert stored.refresh_token == "refresh-1"

        credential_store.update_tokens("acct-1", "access-3", expires, refresh_token="refresh-2")
        assert credential_store.get("acct-1").refresh_token == "refresh-2"

    def test_mark_needs_reauth(self, credential_store, stored_credential):
        """Test mark needs reauth."""
        credential_store.mark_needs_reauth("acct-1", "invalid_grant")
        stored = credential_store.get("acct-1")
        assert stored.needs_reauth is True
        assert stored.reauth_reason == "invalid_grant"
        assert stored.refresh_token == "refresh-1"

    def test_find_account_by_email(self, credential_store, stored_credential):
        """Test find account by email."""
        assert credential_store.find_account_by_email("OWNER@example.com") == "acct-1"
        assert credential_store.find_account_by_email("other@example.com") is None

    def test_expires_within(self, clock):
        """Test expires within."""
        credential = Credential(access_token="t", expires_at=clock() + timedelta(minutes=4))
        assert credential.expires_within(timedelta(minutes=5), clock())
        assert not credential.expires_within(timedelta(minutes=3), clock())

    def test_delete(self, credential_store, stored_credential):
        """Test deleting a credential."""
        credential_store.delete("acct-1")
        assert credential_store.get("acct-1") is None
        assert credential_store.list_account_ids() == []


class TestWatchStore:
    """Tests for WatchStore cursor handling."""

    def test_round_trip(self, watch_store, clock):
        """Test storing and reading back a subscription."""
        subscription = make_subscription(clock)
        watch_store.replace(subscription)
        assert watch_store.get("acct-1") == subscription

    def test_advance_cursor_is_monotonic(self, watch_store, clock):
        """Test advance cursor is monotonic."""
        watch_store.replace(make_subscription(clock, cursor="100"))

        assert watch_store.advance_cursor("acct-1", "150") is True
        assert watch_store.advance_cursor("acct-1", "120") is False
        assert watch_store.advance_cursor("acct-1", "150") is False
        assert watch_store.get("acct-1").cursor == "150"

    def test_advance_cursor_compares_numerically(self, watch_store, clock):
        """Test advance cursor compares numerically."""
        watch_store.replace(make_subscription(clock, cursor="99"))
        assert watch_store.advance_cursor("acct-1", "100") is True
        assert watch_store.get("acct-1").cursor == "100"

    def test_advance_cursor_records_sync_time(self, watch_store, clock):
        """Test advance cursor records sync time."""
        watch_store.replace(make_subscription(clock))
        clock.advance(minutes=5)
        watch_store.advance_cursor("acct-1", "100")
        assert watch_store.get("acct-1").last_synced_at == clock()

    def test_mark_inactive(self, watch_store, clock):
        """Test mark inactive."""
        watch_store.replace(make_subscription(clock))
        clock.advance(hours=1)
        watch_store.mark_inactive("acct-1", InactiveReason.NEEDS_REAUTH)
        stored = watch_store.get("acct-1")
        assert stored.is_active is False
        assert stored.inactive_reason is InactiveReason.NEEDS_REAUTH
        assert stored.deactivated_at == clock()
        assert stored.cursor == "100"

    def test_mark_inactive_missing_is_noop(self, watch_store):
        """Test mark inactive missing is noop."""
        watch_store.mark_inactive("nobody", InactiveReason.EXPIRED)
        assert watch_store.get("nobody") is None

    def test_replace_reactivates(self, watch_store, clock):
        """Test replace reactivates."""
        watch_store.replace(make_subscription(clock))
        watch_store.mark_inactive("acct-1", InactiveReason.EXPIRED)
        watch_store.replace(make_subscription(clock, cursor="300"))
        stored = watch_store.get("acct-1")
        assert stored.is_active is True
        assert stored.inactive_reason is None

    def test_set_sync_pending(self, watch_store, clock):
        """Test that the pending flag is stored without touching the cursor."""
        watch_store.replace(make_subscription(clock))

        watch_store.set_sync_pending("acct-1", True)
        assert watch_store.get("acct-1").sync_pending is True
        assert watch_store.get("acct-1").cursor == "100"

        watch_store.set_sync_pending("acct-1", False)
        assert watch_store.get("acct-1").sync_pending is False

    def test_set_sync_pending_missing_is_noop(self, watch_store):
        """Test that flagging an unknown account does not create a watch."""
        watch_store.set_sync_pending("nobody", True)
        assert watch_store.get("nobody") is None

    def test_filter_fields_round_trip(self, clock):
        """Test that label behaviour and the pending flag survive serialisation."""
        subscription = make_subscription(
            clock, label_filter_behavior="exclude", sync_pending=True
        )
        data = subscription.to_dict()

        assert data["label_filter_behavior"] == "exclude"
        assert data["sync_pending"] is True
        assert WatchSubscription.from_dict(data) == subscription

    def test_older_documents_get_defaults(self, clock):
        """Test that documents written before the filter fields existed still load."""
        data = make_subscription(clock).to_dict()
        del data["label_filter_behavior"]
        del data["sync_pending"]

        loaded = WatchSubscription.from_dict(data)

        assert loaded.label_filter_behavior == "include"
        assert loaded.sync_pending is False

    @pytest.mark.parametrize("cursor,expected", [("42", 42), ("", -1), (None, -1), ("abc", -1)])
    def test_cursor_value(self, cursor, expected):
        """Test numeric cursor parsing."""
        assert cursor_value(cursor) == expected


class TestProcessedMessageLedgers:
    """Tests for both ledger implementations."""

    @pytest.fixture(params=["memory", "store"])
    def ledger(self, request):
        if request.param == "memory":
            return InMemoryProcessedMessageLedger()
        return StoreProcessedMessageLedger(InMemoryDocumentStore())

    def test_mark_and_check(self, ledger):
        """Test mark and check."""
        assert not ledger.is_processed("acct-1", "m1")
        ledger.mark_processed("acct-1", "m1")
        ledger.mark_processed("acct-1", "m1")
        assert ledger.is_processed("acct-1", "m1")
        assert not ledger.is_processed("acct-2", "m1")
        assert ledger.get_processed_ids("acct-1") == {"m1"}

    def test_prune_drops_old_entries(self, clock):
        """Test that prune() forgets entries recorded before the cutoff."""
        for ledger in (
            InMemoryProcessedMessageLedger(clock=clock),
            StoreProcessedMessageLedger(InMemoryDocumentStore(), clock=clock),
        ):
            ledger.mark_processed("acct-1", "old")
            clock.advance(days=9)
            ledger.mark_processed("acct-1", "new")

            assert ledger.prune(clock() - timedelta(days=8)) == 1
            assert ledger.get_processed_ids("acct-1") == {"new"}
            assert ledger.prune(clock() - timedelta(days=8)) == 0

    def test_prune_drops_entries_without_time(self, clock):
        """Test that store entries written without processed_at are pruned."""
        document_store = InMemoryDocumentStore()
        document_store.set(
            StoreProcessedMessageLedger.COLLECTION,
            "acct-1:legacy",
            {"account_id": "acct-1", "message_id": "legacy"},
        )
        ledger = StoreProcessedMessageLedger(document_store, clock=clock)
        ledger.mark_processed("acct-1", "m1")

        assert ledger.prune(clock() - timedelta(days=8)) == 1
        assert ledger.get_processed_ids("acct-1") == {"m1"}


class TestStoreReauthNotifier:
    """Tests for the user-document reconnect flag."""

    def test_notify_then_clear(self, document_store, clock):
        """Test notify then clear."""
        document_store.set("users", "acct-1", {"display_name": "Ada"})
        notifier = StoreReauthNotifier(document_store, clock=clock)

        notifier.notify("acct-1", "invalid_grant")
        flagged = document_store.get("users", "acct-1")
        notifier.clear("acct-1")
        cleared = document_store.get("users", "acct-1")

        assert flagged["gmail_needs_reauth"] is True
        assert flagged["gmail_reauth_reason"] == "invalid_grant"
        assert flagged["gmail_reauth_flagged_at"] == clock().isoformat()
        assert flagged["display_name"] == "Ada"
        assert cleared["gmail_needs_reauth"] is False
        assert cleared["gmail_reauth_reason"] is None
