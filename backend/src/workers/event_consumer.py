"""Inbound event consumer.

Reads request and agent-response events from Redis Streams with a consumer
group and hands them to the orchestrator. Acknowledgement rules:
- handled, duplicate, not found, ignored: ack
- malformed payload: log, ack (redelivery cannot fix it)
- transient error (directory, bus, lock): no ack; the entry stays pending and
  is retried on the next poll, or claimed by another consumer once idle

Run with:
    python -m workers.event_consumer
"""

import logging
import signal
import threading
from typing import Any, Mapping, Optional, Sequence

from events.contracts import INBOUND_EVENT_TYPES, parse_inbound_event
from infrastructure.redis_bus import RedisStreamsEventBus
from matching.locks import RedisRequestLocks
from matching.exceptions import TRANSIENT_ERRORS, InboundEventValidationError
from matching.orchestrator import MatchingOrchestrator
from observability import metrics
from observability.correlation import set_correlation_id

logger = logging.getLogger(__name__)

ACKED = "acked"
RETRY = "retry"


def _field(fields: Mapping[Any, Any], name: str) -> Optional[Any]:
    value = fields.get(name)
    if value is None:
        value = fields.get(name.encode("utf-8"))
    return value


class InboundEventConsumer:
    """Consumer-group reader dispatching inbound events.

    Args:
        bus: Redis Streams bus
        orchestrator: Matching orchestrator
        group: Consumer group name
        consumer: Consumer name within the group
        channels: Inbound channels to read
        count: Max entries per read
        block_ms: XREADGROUP block time
        claim_idle_ms: Idle time after which another consumer's unacked entry is claimed
    """

    def __init__(
        self,
        bus: RedisStreamsEventBus,
        orchestrator: MatchingOrchestrator,
        group: str,
        consumer: str,
        channels: Sequence[str] = INBOUND_EVENT_TYPES,
        count: int = 10,
        block_ms: int = 5000,
        claim_idle_ms: int = 60_000,
    ):
        self.bus = bus
        self.orchestrator = orchestrator
        self.group = group
        self.consumer = consumer
        self.channels = tuple(channels)
        self.count = count
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self._stop = threading.Event()

    def handle_message(self, fields: Mapping[Any, Any]) -> str:
        """Handle one stream entry and report whether it may be acked."""
        raw = _field(fields, "event")
        try:
            if raw is None:
                raise InboundEventValidationError("Stream entry has no 'event' field")
            event = parse_inbound_event(raw)
        except InboundEventValidationError as e:
            metrics.inbound_events_total.labels(event_type="unknown", result="invalid").inc()
            logger.warning(f"Rejected inbound event: {e}", extra={"errors": e.errors})
            return ACKED

        set_correlation_id(event.correlation_id or event.event_id)
        try:
            outcome = self.orchestrator.handle_event(event)
        except TRANSIENT_ERRORS as e:
            metrics.inbound_events_total.labels(event_type=event.event_type, result="retry").inc()
            logger.warning(
                f"Transient failure handling {event.event_type}, leaving unacked: {e}",
                extra={"event_id": event.event_id}
            )
            return RETRY
        except Exception as e:
            metrics.inbound_events_total.labels(event_type=event.event_type, result="error").inc()
            logger.error(
                f"Unexpected failure handling {event.event_type}, leaving unacked: {e}",
                exc_info=True,
                extra={"event_id": event.event_id}
            )
            return RETRY

        logger.debug(
            f"Handled {event.event_type}: {outcome.value}",
            extra={"event_id": event.event_id}
        )
        return ACKED

    def poll_once(self) -> int:
        """Process one batch and return the number of entries acked.

        Entries this consumer left unacked are retried first, then entries
        abandoned by other consumers are claimed, then new entries are read.
        """
        acked = self._process(
            self.bus.read(self.channels, self.group, self.consumer, count=self.count, pending=True)
        )
        acked += self._process(
            self.bus.claim_stale(self.channels, self.group, self.consumer, self.claim_idle_ms, count=self.count)
        )
        acked += self._process(
            self.bus.read(self.channels, self.group, self.consumer, count=self.count, block_ms=self.block_ms)
        )
        return acked

    def _process(self, entries) -> int:
        acked = 0
        for stream, message_id, fields in entries:
            if self.handle_message(fields) == ACKED:
                self.bus.ack(stream, self.group, message_id)
                acked += 1
        return acked

    def run(self) -> None:
        self.bus.ensure_group(self.channels, self.group)
        logger.info(
            f"Inbound consumer {self.consumer} started",
            extra={"group": self.group, "channels": list(self.channels)}
        )
        while not self._stop.is_set():
            self.poll_once()
        logger.info(f"Inbound consumer {self.consumer} stopped")

    def stop(self, *_args) -> None:
        self._stop.set()


def main() -> None:
    from config import get_settings
    from dependencies import get_container
    from observability.logging_config import configure_logging

    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

    container = get_container()
    if not isinstance(container.bus, RedisStreamsEventBus):
        raise RuntimeError("The inbound consumer requires the Redis Streams bus")
    if not isinstance(container.orchestrator.locks, RedisRequestLocks):
        raise RuntimeError("The inbound consumer shares requests with the API and Celery, set LOCK_BACKEND=redis")
    if not container.bus.ping():
        raise RuntimeError(f"Event bus unreachable at {settings.REDIS_URL}")

    consumer = InboundEventConsumer(
        container.bus,
        container.orchestrator,
        group=settings.EVENT_CONSUMER_GROUP,
        consumer=settings.EVENT_CONSUMER_NAME,
        claim_idle_ms=settings.EVENT_CONSUMER_CLAIM_IDLE_MS,
    )
    signal.signal(signal.SIGTERM, consumer.stop)
    signal.signal(signal.SIGINT, consumer.stop)

    container.start()
    try:
        consumer.run()
    finally:
        container.close()


if __name__ == "__main__":
    main()
