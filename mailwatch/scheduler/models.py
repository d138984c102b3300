"""Watch lifecycle states and renewal reports."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from mailwatch.store import WatchSubscription


class WatchState(str, Enum):
    """Where an account's watch stands relative to its expiry."""

    NO_WATCH = "no_watch"
    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"


def classify_watch(
    subscription: Optional[WatchSubscription],
    now: datetime,
    renewal_window: timedelta,
) -> WatchState:
    """Place a subscription in the renewal state machine.

    Inactive subscriptions count as NO_WATCH: Gmail may still be publishing
    for them, but nothing is processed until they are re-established.
    """
    if subscription is None or not subscription.is_active:
        return WatchState.NO_WATCH
    if subscription.expires_at <= now:
        return WatchState.EXPIRED
    if subscription.expires_at - now <= renewal_window:
        return WatchState.NEAR_EXPIRY
    return WatchState.ACTIVE


class RenewalOutcome(str, Enum):
    """Result of one renewal attempt for one account."""

    RENEWED = "renewed"
    DEFERRED = "deferred"
    EXPIRED = "expired"
    NEEDS_REAUTH = "needs_reauth"
    PROVIDER_REJECTED = "provider_rejected"
    SKIPPED = "skipped"


@dataclass
class TickReport:
    """Summary of one renewal tick.

    Attributes:
        started_at: When the tick began
        checked: Accounts looked at
        outcomes: Outcome per account that needed work
        timed_out: Accounts whose work did not finish within the tick period
        backlog_gaps: Accounts renewed before their history backlog was
            drained; messages between the two cursors were not processed
        pruned_ledger_entries: Processed-message entries dropped this tick
    """

    started_at: datetime
    checked: int = 0
    outcomes: dict[str, RenewalOutcome] = field(default_factory=dict)
    timed_out: list[str] = field(default_factory=list)
    backlog_gaps: list[str] = field(default_factory=list)
    pruned_ledger_entries: int = 0

    def accounts_with(self, outcome: RenewalOutcome) -> list[str]:
        return [account for account, result in self.outcomes.items() if result is outcome]

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "checked": self.checked,
            "outcomes": {account: result.value for account, result in self.outcomes.items()},
            "timed_out": list(self.timed_out),
            "backlog_gaps": list(self.backlog_gaps),
            "pruned_ledger_entries": self.pruned_ledger_entries,
        }
