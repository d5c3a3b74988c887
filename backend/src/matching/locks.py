"""Per-request serialization.

Every mutation of a request's matching state, whether triggered by an inbound
event, a timer or an admin override, runs inside ``locks.hold(request_id)``.
Acquisition is bounded by a timeout and raises LockTimeoutError (retryable).
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator

import redis

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


class RequestLocks(ABC):
    """Keyed lock provider."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def hold(self, request_id: str) -> ContextManager[None]:
        """Hold the lock for ``request_id`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        pass


class InProcessRequestLocks(RequestLocks):
    """Keyed re-entrant locks for a single process.

    Entries are reference counted and dropped when no thread holds or waits
    for them, so the map only contains requests currently being processed.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def hold(self, request_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(request_id, threading.RLock())
            self._refs[request_id] = self._refs.get(request_id, 0) + 1
        try:
            if not lock.acquire(timeout=self.timeout_seconds):
                raise LockTimeoutError(request_id, self.timeout_seconds)
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._refs[request_id] -= 1
                if self._refs[request_id] == 0:
                    del self._refs[request_id]
                    del self._locks[request_id]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisRequestLocks(RequestLocks):
    """Distributed per-request locks built on redis-py's Lock.

    ``ttl_seconds`` bounds how long a crashed holder can block the request.
    Not re-entrant.
    """

    def __init__(
        self,
        client: redis.Redis,
        timeout_seconds: float = 10.0,
        ttl_seconds: float = 60.0,
        key_prefix: str = "matching:lock",
    ):
        super().__init__(timeout_seconds)
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    @contextmanager
    def hold(self, request_id: str) -> Iterator[None]:
        lock = self.client.lock(
            f"{self.key_prefix}:{request_id}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise LockTimeoutError(request_id, self.timeout_seconds) from e
        if not acquired:
            raise LockTimeoutError(request_id, self.timeout_seconds)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # TTL elapsed while held; another holder may already own it
                logger.warning(
                    f"Lock for request {request_id} expired before release: {e}",
                    extra={"request_id": request_id}
                )
