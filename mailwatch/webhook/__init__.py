"""Push notification ingestion.

Public API:
    - WebhookIngestor: Verifies, decodes, dedupes and routes push deliveries
    - PushVerifier: OIDC and shared-token authenticity checks
    - DedupeCache: Time-windowed memory of seen notifications
    - parse_push_envelope: Decodes a Pub/Sub push body
    - create_app: FastAPI application factory
"""

from .app import create_app
from .dedupe import DedupeCache
from .envelope import parse_push_envelope
from .ingestor import WebhookIngestor
from .models import InboundNotification, IngestResult, IngestStatus, PushNotification
from .verification import PushVerifier

__all__ = [
    "WebhookIngestor",
    "PushVerifier",
    "DedupeCache",
    "parse_push_envelope",
    "create_app",
    "InboundNotification",
    "IngestResult",
    "IngestStatus",
    "PushNotification",
]
