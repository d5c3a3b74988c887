"""Event bus port and in-memory implementation."""

import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple


class EventBusPort(ABC):
    """Port for the canonical event bus.

    Delivery is at-least-once; consumers deduplicate on event_id.
    """

    @abstractmethod
    def publish(self, channel: str, message: Dict[str, Any]) -> str:
        """Publish a message to a channel.

        Returns:
            Transport message id

        Raises:
            EventPublishError: If the message could not be written
        """
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the bus is reachable."""
        pass


class InMemoryEventBus(EventBusPort):
    """Thread-safe in-memory bus for tests and local runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, channel: str, message: Dict[str, Any]) -> str:
        with self._lock:
            self.published.append((channel, message))
        return str(uuid.uuid4())

    def ping(self) -> bool:
        return True

    def messages(self, channel: str) -> List[Dict[str, Any]]:
        """Messages published on one channel, in order."""
        with self._lock:
            return [m for c, m in self.published if c == channel]

    def event_types(self) -> List[str]:
        with self._lock:
            return [c for c, _ in self.published]

    def clear(self) -> None:
        with self._lock:
            self.published.clear()
