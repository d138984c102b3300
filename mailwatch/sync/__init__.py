"""Incremental Gmail history sync.

Public API:
    - HistorySyncer: Resolves cursor deltas into processed messages
    - SyncResult: Outcome of one sync
    - MailMessage: Parsed message handed to consumers
    - MessageConsumer: Interface for downstream side effects
    - TodoSuggestionConsumer: Creates follow-up todo suggestions
"""

from .consumer import MessageConsumer, TodoSuggestionConsumer
from .history_syncer import HistorySyncer
from .models import MailMessage, SyncResult
from .parser import METADATA_HEADERS, extract_body_text, extract_email_address, parse_message

__all__ = [
    "HistorySyncer",
    "SyncResult",
    "MailMessage",
    "MessageConsumer",
    "TodoSuggestionConsumer",
    "METADATA_HEADERS",
    "extract_body_text",
    "extract_email_address",
    "parse_message",
]
