"""Persistence layer: document store collaborator and typed record stores.

Public API:
    - DocumentStore: Interface of the external document database
    - InMemoryDocumentStore, JsonFileDocumentStore: Local implementations
    - CredentialStore: Per-account OAuth credentials
    - WatchStore: Per-account watch subscriptions and history cursors
    - ProcessedMessageLedger: Idempotency ledger for derived side effects
"""

from .credential_store import CredentialStore
from .document_store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from .ledger import (
    InMemoryProcessedMessageLedger,
    ProcessedMessageLedger,
    StoreProcessedMessageLedger,
)
from .models import (
    Credential,
    DeliveryTuning,
    InactiveReason,
    WatchSubscription,
    cursor_value,
    utcnow,
)
from .watch_store import WatchStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "CredentialStore",
    "WatchStore",
    "ProcessedMessageLedger",
    "InMemoryProcessedMessageLedger",
    "StoreProcessedMessageLedger",
    "Credential",
    "DeliveryTuning",
    "InactiveReason",
    "WatchSubscription",
    "cursor_value",
    "utcnow",
]
