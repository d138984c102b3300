"""Per-account serialized work queue on top of a shared thread pool."""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from mailwatch.logging_config import account_context

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    fn: Callable[..., Any]
    args: tuple
    future: Future = field(default_factory=Future)
    coalesce_key: Optional[str] = None


class AccountWorkQueue:
    """Runs jobs for different accounts in parallel, one account at a time.

    Jobs for the same account run strictly in submission order, never
    concurrently, so cursor checkpoints cannot interleave. A job submitted
    with a coalesce_key is merged into an identical job that is still waiting
    for the same account: both submitters get the same future.

    Example:
        queue = AccountWorkQueue(max_workers=4)
        future = queue.submit("acct-1", "sync", syncer.sync, "acct-1", coalesce_key="sync")
    """

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="mailwatch-worker"
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: dict[str, deque[_Job]] = {}
        self._running: set[str] = set()
        self._closed = False

    def submit(
        self,
        account_id: str,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        coalesce_key: Optional[str] = None,
    ) -> Future:
        """Queue fn(*args) behind the account's earlier jobs.

        Returns immediately.

        Args:
            account_id: Account the job belongs to.
            name: Job name for logs.
            fn: Callable to run on a worker thread.
            *args: Positional arguments for fn.
            coalesce_key: Merge with a waiting job carrying the same key.

        Returns:
            Future resolved with fn's result or exception.

        Raises:
            RuntimeError: If the queue has been shut down.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("AccountWorkQueue is shut down")
            queue = self._pending.setdefault(account_id, deque())
            if coalesce_key is not None:
                for waiting in queue:
                    if waiting.coalesce_key == coalesce_key:
                        logger.debug(
                            "Coalesced %s for account %s into a waiting job", name, account_id
                        )
                        return waiting.future
            job = _Job(name=name, fn=fn, args=args, coalesce_key=coalesce_key)
            queue.append(job)
            if account_id not in self._running:
                self._running.add(account_id)
                self._pool.submit(self._drain, account_id)
            return job.future

    def _drain(self, account_id: str) -> None:
        while True:
            with self._lock:
                queue = self._pending.get(account_id)
                if not queue:
                    self._pending.pop(account_id, None)
                    self._running.discard(account_id)
                    self._idle.notify_all()
                    return
                job = queue.popleft()

            if not job.future.set_running_or_notify_cancel():
                continue
            with account_context(account_id, job.name):
                try:
                    result = job.fn(*job.args)
                except Exception as e:
                    logger.exception("Job %s for account %s failed", job.name, account_id)
                    job.future.set_exception(e)
                else:
                    job.future.set_result(result)

    def pending_count(self, account_id: str) -> int:
        """Jobs waiting (not yet started) for an account."""
        with self._lock:
            return len(self._pending.get(account_id, ()))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no account has queued or running jobs.

        Returns:
            False if the timeout elapsed first.
        """
        with self._lock:
            return self._idle.wait_for(lambda: not self._running, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for queued jobs to finish."""
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait)
