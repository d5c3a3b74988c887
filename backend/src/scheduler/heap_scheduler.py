"""In-process timeout scheduler.

A min-heap ordered by expires_at holds one entry per armed match. Cancel and
re-arm use lazy deletion: the live entry for a match_id is tracked in a dict
with a version number, and stale heap entries are skipped when popped. Arm
and cancel are O(log n) and O(1) and never block on callbacks; due entries are
handed to a thread pool so one slow request never delays another.
"""

import heapq
import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from matching.ports import ExpiryCallback, TimeoutSchedulerPort
from models.base import utcnow
from observability.metrics import pending_timers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    request_id: str
    expires_at: datetime
    version: int


class HeapTimeoutScheduler(TimeoutSchedulerPort):
    """Priority-queue scheduler with a background dispatch thread.

    Args:
        callback: Invoked as ``callback(request_id, match_id)`` when an entry fires
        clock: Returns the current aware UTC datetime
        max_workers: Callback pool size; 0 runs callbacks inline in ``fire_due``
        poll_interval: Upper bound on the dispatch thread's sleep in seconds

    The background thread is optional: tests drive ``fire_due(now)`` directly.
    """

    def __init__(
        self,
        callback: Optional[ExpiryCallback] = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 4,
        poll_interval: float = 1.0,
    ):
        self._callback = callback
        self.clock = clock
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._heap: List[Tuple[datetime, int, str, int]] = []
        self._entries: Dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._versions = itertools.count(1)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="match-timeout") if max_workers > 0 else None
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    # =========================================================================
    # PORT
    # =========================================================================

    def arm(self, match_id: str, request_id: str, expires_at: datetime) -> None:
        with self._cond:
            version = next(self._versions)
            self._entries[match_id] = _Entry(request_id, expires_at, version)
            heapq.heappush(self._heap, (expires_at, next(self._seq), match_id, version))
            pending_timers.set(len(self._entries))
            self._cond.notify()

    def cancel(self, match_id: str) -> bool:
        with self._cond:
            removed = self._entries.pop(match_id, None) is not None
            pending_timers.set(len(self._entries))
            return removed

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def pending_count(self) -> int:
        with self._cond:
            return len(self._entries)

    def is_armed(self, match_id: str) -> bool:
        with self._cond:
            return match_id in self._entries

    def next_expiry(self) -> Optional[datetime]:
        with self._cond:
            self._drop_stale_head()
            return self._heap[0][0] if self._heap else None

    def fire_due(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Fire every live entry with expires_at <= now.

        Returns:
            (request_id, match_id) pairs that were dispatched
        """
        now = now or self.clock()
        due: List[Tuple[str, str]] = []
        with self._cond:
            while self._heap and self._heap[0][0] <= now:
                _, _, match_id, version = heapq.heappop(self._heap)
                entry = self._entries.get(match_id)
                if entry is None or entry.version != version:
                    continue
                del self._entries[match_id]
                due.append((entry.request_id, match_id))
            pending_timers.set(len(self._entries))

        for request_id, match_id in due:
            if self._executor is None:
                self._run_callback(request_id, match_id)
            else:
                self._executor.submit(self._run_callback, request_id, match_id)
        return due

    def start(self) -> None:
        """Start the background dispatch thread."""
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._loop, name="match-timeout-dispatch", daemon=True)
            self._thread.start()
        logger.info("Timeout scheduler started")

    def stop(self, wait: bool = True) -> None:
        with self._cond:
            self._stopping = True
            thread = self._thread
            self._thread = None
            self._cond.notify_all()
        if thread is not None:
            thread.join(timeout=5)
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
        logger.info("Timeout scheduler stopped")

    def _loop(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                self._drop_stale_head()
                timeout = self.poll_interval
                if self._heap:
                    until_due = (self._heap[0][0] - self.clock()).total_seconds()
                    timeout = max(0.0, min(timeout, until_due))
                if timeout > 0:
                    self._cond.wait(timeout)
                if self._stopping:
                    return
            self.fire_due()

    def _drop_stale_head(self) -> None:
        while self._heap:
            _, _, match_id, version = self._heap[0]
            entry = self._entries.get(match_id)
            if entry is not None and entry.version == version:
                return
            heapq.heappop(self._heap)

    def _run_callback(self, request_id: str, match_id: str) -> None:
        if self._callback is None:
            logger.warning(f"Timer fired with no callback registered: {match_id}", extra={"match_id": match_id})
            return
        try:
            self._callback(request_id, match_id)
        except Exception as e:
            # Overdue matches are picked up again by the expired-match sweep
            logger.error(
                f"Expiry callback failed for match {match_id}: {e}",
                extra={"request_id": request_id, "match_id": match_id},
                exc_info=True
            )
