"""Shared fixtures for the mailwatch tests."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from mailwatch.executor import RateLimitedExecutor
from mailwatch.gmail import GmailSession
from mailwatch.store import (
    Credential,
    CredentialStore,
    InMemoryDocumentStore,
    WatchStore,
)
from tests.gmail_test_helpers import FakeClock, FakeGmail, RecordingSleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def credential_store(document_store, clock):
    return CredentialStore(document_store, clock=clock)


@pytest.fixture
def watch_store(document_store, clock):
    return WatchStore(document_store, clock=clock)


@pytest.fixture
def executor(sleep, clock):
    return RateLimitedExecutor(max_attempts=5, base_delay=1.0, max_delay=60.0, sleep=sleep, clock=clock)


@pytest.fixture
def gmail(clock):
    return FakeGmail(clock)


@pytest.fixture
def token_refresher():
    refresher = MagicMock()
    refresher.get_valid_access_token.return_value = "access-1"
    refresher.force_refresh.return_value = "access-2"
    return refresher


@pytest.fixture
def session(token_refresher, executor, gmail):
    return GmailSession(token_refresher, executor, service_factory=lambda token, deadline: gmail)


@pytest.fixture
def stored_credential(credential_store, clock):
    credential = Credential(
        access_token="access-1",
        expires_at=clock() + timedelta(hours=1),
        refresh_token="refresh-1",
        scopes=frozenset({"https://www.googleapis.com/auth/gmail.readonly"}),
        email_address="owner@example.com",
    )
    return credential_store.grant("acct-1", credential)
