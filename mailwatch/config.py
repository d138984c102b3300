"""Runtime settings for the mail watch service.

All values come from environment variables (a ``.env`` file is loaded by the
CLI entry point), so renewal windows, retry policy, dedupe window and delivery
tuning can be changed without code changes.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from .exceptions import ConfigError

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Gmail scopes the watch manager needs on every connected account
DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
]


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(name, f"expected an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(name, f"must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(name, f"expected a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(name, f"must be >= {minimum}, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(env: Mapping[str, str], name: str, default: list[str]) -> list[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Externally configurable knobs for every component.

    Attributes:
        google_client_id: OAuth client ID used for refresh-token exchanges.
        google_client_secret: OAuth client secret.
        token_uri: Google token endpoint.
        pubsub_topic: Fully qualified Pub/Sub topic Gmail publishes to.
        watch_label_ids: Labels the watch filters on.
        label_filter_behavior: "include" or "exclude" for watch_label_ids.
        renewal_window: Renew watches expiring within this window.
        renewal_tick: Period of the renewal scheduler.
        final_attempt_lead: How long before expiry the last-chance renewal runs.
        credential_check_interval: Period of the credential health check.
        max_attempts: Retry attempts for retryable provider failures.
        base_backoff: Base delay of the exponential backoff, in seconds.
        max_backoff: Ceiling for a single backoff delay, in seconds.
        call_deadline: Socket deadline for a single provider call, in seconds.
        token_safety_margin: Refresh tokens expiring within this margin.
        dedupe_window: Window in which identical notifications are dropped.
        max_items_per_delivery: Messages processed per sync call.
        inter_delivery_delay_ms: Pause between message fetches.
        workers: Size of the per-account worker pool.
        push_audience: Expected audience of Pub/Sub OIDC push tokens.
        push_service_account: Expected signer email of Pub/Sub push tokens.
        push_token: Shared verification token (query parameter) for pushes.
        allow_unverified_push: Accept pushes without any verification.
        store_path: JSON file backing the document store; in-memory if unset.
        require_known_contact: Only act on mail from senders in contacts.
        mirror_messages: Save contacts' messages, body included.
        sync_retry_interval: Period of the retry job for unfinished syncs.
        ledger_retention: How long processed-message entries are kept.
        catch_up_passes: Sync calls a renewal may spend draining the backlog.
    """

    google_client_id: str = ""
    google_client_secret: str = ""
    token_uri: str = GOOGLE_TOKEN_URI
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    pubsub_topic: str = ""
    watch_label_ids: list[str] = field(default_factory=lambda: ["INBOX"])
    label_filter_behavior: str = "include"
    renewal_window: timedelta = timedelta(hours=24)
    renewal_tick: timedelta = timedelta(hours=6)
    final_attempt_lead: timedelta = timedelta(minutes=30)
    credential_check_interval: timedelta = timedelta(hours=12)
    max_attempts: int = 5
    base_backoff: float = 1.0
    max_backoff: float = 60.0
    call_deadline: float = 30.0
    token_safety_margin: timedelta = timedelta(minutes=5)
    dedupe_window: timedelta = timedelta(seconds=60)
    max_items_per_delivery: int = 3
    inter_delivery_delay_ms: int = 2000
    workers: int = 4
    push_audience: str = ""
    push_service_account: str = ""
    push_token: str = ""
    allow_unverified_push: bool = False
    store_path: Optional[Path] = None
    require_known_contact: bool = True
    mirror_messages: bool = True
    sync_retry_interval: timedelta = timedelta(minutes=5)
    ledger_retention: timedelta = timedelta(days=8)
    catch_up_passes: int = 20

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Raises:
            ConfigError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        behavior = env.get("GMAIL_LABEL_FILTER_BEHAVIOR", "include").lower()
        if behavior not in ("include", "exclude"):
            raise ConfigError(
                "GMAIL_LABEL_FILTER_BEHAVIOR", f"expected include or exclude, got {behavior!r}"
            )

        store_path = env.get("MAILWATCH_STORE_PATH")

        settings = cls(
            google_client_id=env.get("GOOGLE_CLIENT_ID", ""),
            google_client_secret=env.get("GOOGLE_CLIENT_SECRET", ""),
            token_uri=env.get("GOOGLE_TOKEN_URI", GOOGLE_TOKEN_URI),
            scopes=_get_list(env, "GMAIL_SCOPES", DEFAULT_SCOPES),
            pubsub_topic=env.get("GMAIL_PUBSUB_TOPIC", ""),
            watch_label_ids=_get_list(env, "GMAIL_WATCH_LABELS", ["INBOX"]),
            label_filter_behavior=behavior,
            renewal_window=timedelta(
                hours=_get_float(env, "MAILWATCH_RENEWAL_WINDOW_HOURS", 24.0)
            ),
            renewal_tick=timedelta(
                minutes=_get_float(env, "MAILWATCH_RENEWAL_TICK_MINUTES", 360.0, minimum=1.0)
            ),
            final_attempt_lead=timedelta(
                minutes=_get_float(env, "MAILWATCH_FINAL_ATTEMPT_LEAD_MINUTES", 30.0)
            ),
            credential_check_interval=timedelta(
                minutes=_get_float(env, "MAILWATCH_CREDENTIAL_CHECK_MINUTES", 720.0, minimum=1.0)
            ),
            max_attempts=_get_int(env, "MAILWATCH_MAX_ATTEMPTS", 5, minimum=1),
            base_backoff=_get_float(env, "MAILWATCH_BASE_BACKOFF_SECONDS", 1.0),
            max_backoff=_get_float(env, "MAILWATCH_MAX_BACKOFF_SECONDS", 60.0),
            call_deadline=_get_float(env, "MAILWATCH_CALL_DEADLINE_SECONDS", 30.0, minimum=1.0),
            token_safety_margin=timedelta(
                seconds=_get_float(env, "MAILWATCH_TOKEN_SAFETY_MARGIN_SECONDS", 300.0)
            ),
            dedupe_window=timedelta(
                seconds=_get_float(env, "MAILWATCH_DEDUPE_WINDOW_SECONDS", 60.0)
            ),
            max_items_per_delivery=_get_int(env, "MAILWATCH_MAX_ITEMS_PER_DELIVERY", 3, minimum=1),
            inter_delivery_delay_ms=_get_int(env, "MAILWATCH_INTER_DELIVERY_DELAY_MS", 2000),
            workers=_get_int(env, "MAILWATCH_WORKERS", 4, minimum=1),
            push_audience=env.get("MAILWATCH_PUSH_AUDIENCE", ""),
            push_service_account=env.get("MAILWATCH_PUSH_SERVICE_ACCOUNT", ""),
            push_token=env.get("MAILWATCH_PUSH_TOKEN", ""),
            allow_unverified_push=_get_bool(env, "MAILWATCH_ALLOW_UNVERIFIED_PUSH", False),
            store_path=Path(store_path) if store_path else None,
            require_known_contact=_get_bool(env, "MAILWATCH_REQUIRE_KNOWN_CONTACT", True),
            mirror_messages=_get_bool(env, "MAILWATCH_MIRROR_MESSAGES", True),
            sync_retry_interval=timedelta(
                minutes=_get_float(env, "MAILWATCH_SYNC_RETRY_MINUTES", 5.0, minimum=1.0)
            ),
            ledger_retention=timedelta(
                days=_get_float(env, "MAILWATCH_LEDGER_RETENTION_DAYS", 8.0, minimum=1.0)
            ),
            catch_up_passes=_get_int(env, "MAILWATCH_CATCH_UP_PASSES", 20, minimum=1),
        )

        if settings.max_backoff < settings.base_backoff:
            raise ConfigError(
                "MAILWATCH_MAX_BACKOFF_SECONDS",
                f"must be >= MAILWATCH_BASE_BACKOFF_SECONDS ({settings.base_backoff})",
            )
        return settings

    @property
    def push_verification_configured(self) -> bool:
        """Whether at least one push authenticity check is configured."""
        return bool(self.push_audience or self.push_token)
