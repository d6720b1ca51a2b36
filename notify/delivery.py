"""
notify/delivery.py -- Bounded background delivery with retries.

Notifications and webhook events are fire-and-forget from the caller's point
of view, but unbounded fire-and-forget (one thread per send, infinite
retries) turns a slow gateway into a resource leak. DeliveryQueue bounds
every dimension:

  backlog   queue.Queue(maxsize) -- submit() drops and logs when full
  workers   a fixed number of daemon threads
  retries   tenacity, stop_after_attempt(max_attempts), exponential backoff
  timeout   enforced by the transports themselves (requests timeout=)

A job that still fails after the last attempt is logged and discarded. It
never propagates to the request that queued it.

Layer rule: imports core/ only.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass

from tenacity import Retrying, stop_after_attempt, wait_exponential

logger = logging.getLogger("gatekeeper.delivery")

_STOP = object()


@dataclass
class DeliveryStats:
    submitted: int = 0
    delivered: int = 0
    failed: int = 0
    dropped: int = 0


class DeliveryQueue:
    """Fixed-size job queue drained by a fixed pool of worker threads.

    Args:
        workers:       number of daemon threads.
        maxsize:       backlog bound; 0 is rejected (would be unbounded).
        max_attempts:  tries per job including the first.
        backoff:       base seconds for exponential backoff between tries.
    """

    def __init__(self, workers: int = 2, maxsize: int = 1000, max_attempts: int = 3, backoff: float = 0.5) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._lock = threading.Lock()
        self.stats = DeliveryStats()
        self._threads = [
            threading.Thread(target=self._run, name=f"gatekeeper-delivery-{i}", daemon=True) for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def submit(self, name: str, fn: Callable, *args) -> bool:
        """Queue fn(*args). Returns False (and logs) when the backlog is full."""
        try:
            self._queue.put_nowait((name, fn, args))
        except queue.Full:
            self._count("dropped")
            logger.warning("Delivery queue full -- dropped %s", name)
            return False
        self._count("submitted")
        return True

    def join(self) -> None:
        """Block until every queued job has been processed (tests, shutdown)."""
        self._queue.join()

    def shutdown(self, timeout: float = 5.0) -> None:
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join(timeout=timeout)

    # ------------------------------------------------------------------

    def _count(self, field_name: str) -> None:
        with self._lock:
            setattr(self.stats, field_name, getattr(self.stats, field_name) + 1)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._deliver(*job)
            finally:
                self._queue.task_done()

    def _deliver(self, name: str, fn: Callable, args: tuple) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=30),
            reraise=True,
        )
        try:
            retrying(fn, *args)
        except Exception as exc:  # noqa: BLE001 -- a failed delivery must not kill the worker
            self._count("failed")
            logger.warning("Delivery of %s failed after %d attempt(s): %s", name, self._max_attempts, exc)
            return
        self._count("delivered")


class InlineDelivery:
    """Synchronous stand-in with the same submit() contract.

    Used by the CLI, where there is no long-lived process to drain a queue.
    Failures are logged and swallowed exactly like the threaded queue.
    """

    def __init__(self) -> None:
        self.stats = DeliveryStats()

    @property
    def backlog(self) -> int:
        return 0

    def submit(self, name: str, fn: Callable, *args) -> bool:
        self.stats.submitted += 1
        try:
            fn(*args)
        except Exception as exc:  # noqa: BLE001
            self.stats.failed += 1
            logger.warning("Delivery of %s failed: %s", name, exc)
        else:
            self.stats.delivered += 1
        return True

    def join(self) -> None:
        return None

    def shutdown(self, timeout: float = 5.0) -> None:
        return None
