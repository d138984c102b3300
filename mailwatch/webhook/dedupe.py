"""Short-lived memory of recently seen notifications."""

import threading
from datetime import datetime, timedelta
from typing import Callable

from mailwatch.store.models import utcnow


class DedupeCache:
    """Remembers keys for a fixed window.

    check_and_add() is atomic, so two concurrent deliveries of the same
    notification cannot both be treated as new.
    """

    def __init__(
        self,
        window: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._window = window
        self._clock = clock
        self._seen: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def check_and_add(self, key: str) -> bool:
        """Record key and report whether it was already seen.

        Returns:
            True if key was seen within the window (a duplicate).
        """
        now = self._clock()
        with self._lock:
            self._evict(now)
            if key in self._seen:
                return True
            self._seen[key] = now + self._window
            return False

    def forget(self, key: str) -> None:
        """Drop a key so a redelivery is processed again."""
        with self._lock:
            self._seen.pop(key, None)

    def _evict(self, now: datetime) -> None:
        expired = [key for key, until in self._seen.items() if until <= now]
        for key in expired:
            del self._seen[key]

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._seen)
