"""Gmail API access shared by the watch registrar, syncer and scheduler."""

from .client import DEFAULT_CALL_DEADLINE, GmailSession, build_gmail_service

__all__ = ["GmailSession", "build_gmail_service", "DEFAULT_CALL_DEADLINE"]
