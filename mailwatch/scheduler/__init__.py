"""Watch renewal and credential health scheduling.

Public API:
    - RenewalScheduler: APScheduler-driven renewal ticks and credential checks
    - WatchState, classify_watch: The per-account renewal state machine
    - RenewalOutcome, TickReport: Results of a renewal pass
"""

from .models import RenewalOutcome, TickReport, WatchState, classify_watch
from .renewal import (
    CREDENTIAL_CHECK_JOB_ID,
    FINAL_ATTEMPT_JOB_PREFIX,
    RENEWAL_JOB_ID,
    SYNC_RETRY_JOB_ID,
    RenewalScheduler,
)

__all__ = [
    "RenewalScheduler",
    "WatchState",
    "classify_watch",
    "RenewalOutcome",
    "TickReport",
    "RENEWAL_JOB_ID",
    "CREDENTIAL_CHECK_JOB_ID",
    "SYNC_RETRY_JOB_ID",
    "FINAL_ATTEMPT_JOB_PREFIX",
]
