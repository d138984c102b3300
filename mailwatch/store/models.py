"""Persistent records for credentials and watch subscriptions."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_instant(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def cursor_value(cursor: Optional[str]) -> int:
    """Numeric value of a Gmail historyId, for ordering checkpoints.

    Gmail history IDs are opaque strings that are documented to increase
    monotonically and are always decimal integers in practice.
    """
    if not cursor:
        return -1
    try:
        return int(cursor)
    except ValueError:
        return -1


class InactiveReason(Enum):
    """Why a watch subscription stopped being active."""

    NEEDS_REAUTH = "needs_reauth"
    PROVIDER_REJECTED = "provider_rejected"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


@dataclass
class Credential:
    """Delegated Gmail OAuth2 credential for one account.

    Attributes:
        access_token: Current bearer token.
        expires_at: When access_token stops being accepted.
        refresh_token: Long-lived token used to mint new access tokens.
            Without it an expired credential cannot be recovered.
        scopes: Scopes granted by the account owner.
        email_address: Mailbox address, used to route push notifications.
        needs_reauth: Set once the credential is known to be unusable.
        reauth_reason: Human readable reason for needs_reauth.
        granted_at: Last time the owner completed the consent flow.
        updated_at: Last write to this record.
    """

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scopes: frozenset[str] = field(default_factory=frozenset)
    email_address: str = ""
    needs_reauth: bool = False
    reauth_reason: Optional[str] = None
    granted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the access token expires within margin of now."""
        now = now or utcnow()
        return self.expires_at - margin <= now

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a document-store dictionary."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": _format_instant(self.expires_at),
            "scopes": sorted(self.scopes),
            "email_address": self.email_address,
            "needs_reauth": self.needs_reauth,
            "reauth_reason": self.reauth_reason,
            "granted_at": _format_instant(self.granted_at),
            "updated_at": _format_instant(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        """Deserialize from a document-store dictionary."""
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_instant(data.get("expires_at"))
            or datetime.fromtimestamp(0, tz=timezone.utc),
            scopes=frozenset(data.get("scopes") or []),
            email_address=data.get("email_address", ""),
            needs_reauth=bool(data.get("needs_reauth", False)),
            reauth_reason=data.get("reauth_reason"),
            granted_at=_parse_instant(data.get("granted_at")),
            updated_at=_parse_instant(data.get("updated_at")),
        )


@dataclass
class DeliveryTuning:
    """Limits applied while processing one notification's delta.

    These exist only to stay under Gmail's per-user rate limits.
    """

    max_items_per_delivery: int = 3
    inter_delivery_delay_ms: int = 2000

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_items_per_delivery": self.max_items_per_delivery,
            "inter_delivery_delay_ms": self.inter_delivery_delay_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "DeliveryTuning":
        data = data or {}
        return cls(
            max_items_per_delivery=int(data.get("max_items_per_delivery", 3)),
            inter_delivery_delay_ms=int(data.get("inter_delivery_delay_ms", 2000)),
        )


@dataclass
class WatchSubscription:
    """The single authoritative Gmail push subscription of an account.

    Attributes:
        account_id: Owning account.
        cursor: Gmail historyId up to which history has been processed.
        expires_at: When Gmail stops delivering notifications.
        is_active: Whether notifications for this account are processed.
        tuning: Delivery tuning applied by the history syncer.
        topic_name: Pub/Sub topic the watch publishes to.
        label_ids: Labels the watch is filtered on.
        label_filter_behavior: "include" or "exclude" for label_ids.
        established_at: When the current registration was made.
        last_synced_at: Last successful cursor checkpoint.
        sync_pending: A sync failed or stopped at the delivery cap and its
            delta still has to be processed.
        inactive_reason: Why is_active is False, if it is.
        deactivated_at: When the watch became inactive.
        last_cursor_gone_at: Last time the cursor had to be re-baselined.
    """

    account_id: str
    cursor: str
    expires_at: datetime
    is_active: bool = True
    tuning: DeliveryTuning = field(default_factory=DeliveryTuning)
    topic_name: str = ""
    label_ids: list[str] = field(default_factory=list)
    label_filter_behavior: str = "include"
    established_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    sync_pending: bool = False
    inactive_reason: Optional[InactiveReason] = None
    deactivated_at: Optional[datetime] = None
    last_cursor_gone_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a document-store dictionary."""
        return {
            "account_id": self.account_id,
            "cursor": self.cursor,
            "expires_at": _format_instant(self.expires_at),
            "is_active": self.is_active,
            "tuning": self.tuning.to_dict(),
            "topic_name": self.topic_name,
            "label_ids": list(self.label_ids),
            "label_filter_behavior": self.label_filter_behavior,
            "established_at": _format_instant(self.established_at),
            "last_synced_at": _format_instant(self.last_synced_at),
            "sync_pending": self.sync_pending,
            "inactive_reason": self.inactive_reason.value if self.inactive_reason else None,
            "deactivated_at": _format_instant(self.deactivated_at),
            "last_cursor_gone_at": _format_instant(self.last_cursor_gone_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WatchSubscription":
        """Deserialize from a document-store dictionary."""
        reason = data.get("inactive_reason")
        return cls(
            account_id=data["account_id"],
            cursor=str(data.get("cursor") or ""),
            expires_at=_parse_instant(data.get("expires_at"))
            or datetime.fromtimestamp(0, tz=timezone.utc),
            is_active=bool(data.get("is_active", False)),
            tuning=DeliveryTuning.from_dict(data.get("tuning")),
            topic_name=data.get("topic_name", ""),
            label_ids=list(data.get("label_ids") or []),
            label_filter_behavior=data.get("label_filter_behavior") or "include",
            established_at=_parse_instant(data.get("established_at")),
            last_synced_at=_parse_instant(data.get("last_synced_at")),
            sync_pending=bool(data.get("sync_pending", False)),
            inactive_reason=InactiveReason(reason) if reason else None,
            deactivated_at=_parse_instant(data.get("deactivated_at")),
            last_cursor_gone_at=_parse_instant(data.get("last_cursor_gone_at")),
        )
