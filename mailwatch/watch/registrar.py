"""WatchRegistrar: (re)establishes Gmail push-notification watches."""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from mailwatch.exceptions import ConfigError, ProviderRejectedError
from mailwatch.gmail import GmailSession
from mailwatch.store import (
    DeliveryTuning,
    InactiveReason,
    WatchStore,
    WatchSubscription,
    utcnow,
)

logger = logging.getLogger(__name__)


def parse_expiration(value) -> datetime:
    """Convert Gmail's watch expiration (epoch milliseconds) to a datetime."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        raise ProviderRejectedError(f"users.watch returned invalid expiration {value!r}") from None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


class WatchRegistrar:
    """Keeps one authoritative Gmail watch per account.

    Registration is re-entrant: calling ensure_watch() while a watch is live
    replaces it. Gmail returns a fresh historyId, which becomes the cursor; the
    previous cursor is discarded, never merged.
    """

    def __init__(
        self,
        session: GmailSession,
        watch_store: WatchStore,
        topic_name: str,
        label_ids: Sequence[str] = ("INBOX",),
        label_filter_behavior: str = "include",
        tuning: Optional[DeliveryTuning] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the registrar.

        Args:
            session: Gmail session used for users.watch / users.stop.
            watch_store: Where subscriptions are persisted.
            topic_name: Pub/Sub topic, "projects/<project>/topics/<topic>".
            label_ids: Labels to watch. Defaults to INBOX only.
            label_filter_behavior: "include" or "exclude".
            tuning: Delivery tuning stored with every new registration.
            clock: Current-time source.
        """
        self._session = session
        self._watches = watch_store
        self._topic_name = topic_name
        self._label_ids = list(label_ids)
        self._label_filter_behavior = label_filter_behavior
        self._tuning = tuning or DeliveryTuning()
        self._clock = clock

    def ensure_watch(self, account_id: str) -> WatchSubscription:
        """Register (or re-register) the account's Gmail watch.

        Args:
            account_id: Account to watch.

        Returns:
            The newly persisted, active WatchSubscription.

        Raises:
            ConfigError: If no Pub/Sub topic is configured.
            NeedsReauthError: If the grant lacks permission.
            ProviderRejectedError: If Gmail rejects the registration.
            ExhaustedError: If Gmail kept failing transiently.
        """
        if not self._topic_name:
            raise ConfigError("GMAIL_PUBSUB_TOPIC", "a Pub/Sub topic is required to watch mailboxes")

        previous = self._watches.get(account_id)
        body = {
            "topicName": self._topic_name,
            "labelIds": self._label_ids,
            "labelFilterBehavior": self._label_filter_behavior,
        }
        response = self._session.execute(
            account_id,
            "users.watch",
            lambda service: service.users().watch(userId="me", body=body),
        )

        history_id = response.get("historyId")
        if not history_id:
            raise ProviderRejectedError("users.watch response is missing historyId")
        expires_at = parse_expiration(response.get("expiration"))
        now = self._clock()
        if expires_at <= now:
            raise ProviderRejectedError(
                f"users.watch returned an expiration in the past ({expires_at.isoformat()})"
            )

        subscription = WatchSubscription(
            account_id=account_id,
            cursor=str(history_id),
            expires_at=expires_at,
            is_active=True,
            tuning=DeliveryTuning(
                max_items_per_delivery=self._tuning.max_items_per_delivery,
                inter_delivery_delay_ms=self._tuning.inter_delivery_delay_ms,
            ),
            topic_name=self._topic_name,
            label_ids=list(self._label_ids),
            label_filter_behavior=self._label_filter_behavior,
            established_at=now,
            last_synced_at=previous.last_synced_at if previous else None,
            last_cursor_gone_at=previous.last_cursor_gone_at if previous else None,
        )
        self._watches.replace(subscription)

        if previous is not None and previous.is_active and previous.cursor != subscription.cursor:
            logger.info(
                "Replaced watch for account %s: cursor %s superseded by %s, expires %s",
                account_id,
                previous.cursor,
                subscription.cursor,
                expires_at.isoformat(),
            )
        else:
            logger.info(
                "Established watch for account %s at cursor %s, expires %s",
                account_id,
                subscription.cursor,
                expires_at.isoformat(),
            )
        return subscription

    def stop_watch(self, account_id: str) -> None:
        """Stop Gmail notifications and mark the watch disconnected.

        A 404 from Gmail (watch already gone) is not an error.

        Raises:
            NeedsReauthError: If the grant is already revoked.
            ExhaustedError: If Gmail kept failing transiently.
        """
        try:
            self._session.execute(
                account_id,
                "users.stop",
                lambda service: service.users().stop(userId="me"),
            )
            logger.info("Stopped Gmail watch for account %s", account_id)
        except ProviderRejectedError as e:
            logger.warning(
                "Could not stop Gmail watch for account %s, it may already be gone: %s",
                account_id,
                e,
            )
        finally:
            self._watches.mark_inactive(account_id, InactiveReason.DISCONNECTED)
