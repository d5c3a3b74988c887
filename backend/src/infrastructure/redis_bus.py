"""Redis Streams event bus.

Each channel maps to the stream ``{prefix}:{channel}``. Messages carry the
JSON envelope in a single ``event`` field. Consumers read through a consumer
group and XACK only after handling succeeded.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import redis

from matching.exceptions import EventPublishError
from events.bus import EventBusPort

logger = logging.getLogger(__name__)

StreamEntry = Tuple[str, str, Dict[str, str]]  # (stream, message_id, fields)


class RedisStreamsEventBus(EventBusPort):
    """Event bus backed by Redis Streams.

    Args:
        client: redis.Redis created with decode_responses=True
        stream_prefix: Prefix of every stream key
        maxlen: Approximate stream length cap
    """

    def __init__(self, client: redis.Redis, stream_prefix: str = "events", maxlen: int = 100_000):
        self.client = client
        self.stream_prefix = stream_prefix
        self.maxlen = maxlen

    @classmethod
    def from_url(cls, url: str, stream_prefix: str = "events", socket_timeout: float = 5.0) -> "RedisStreamsEventBus":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, stream_prefix=stream_prefix)

    def stream_key(self, channel: str) -> str:
        return f"{self.stream_prefix}:{channel}"

    def publish(self, channel: str, message: Dict[str, Any]) -> str:
        try:
            return self.client.xadd(
                self.stream_key(channel),
                {"event": json.dumps(message, default=str)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except redis.RedisError as e:
            raise EventPublishError(f"XADD to {channel} failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    # Consumer side

    def ensure_group(self, channels: Sequence[str], group: str) -> None:
        """Create the consumer group on every stream (idempotent)."""
        for channel in channels:
            try:
                self.client.xgroup_create(self.stream_key(channel), group, id="0", mkstream=True)
            except redis.ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    def read(
        self,
        channels: Sequence[str],
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = 5000,
        pending: bool = False,
    ) -> List[StreamEntry]:
        """Read entries for this consumer.

        With ``pending=True`` the entries already delivered to this consumer
        but not yet acked are returned instead of new ones, without blocking.
        Entries trimmed from the stream come back with empty fields.
        """
        start_id = "0" if pending else ">"
        streams = {self.stream_key(c): start_id for c in channels}
        response = self.client.xreadgroup(
            group, consumer, streams, count=count, block=None if pending else block_ms
        )
        entries: List[StreamEntry] = []
        for stream, messages in response or []:
            for message_id, fields in messages:
                entries.append((stream, message_id, fields or {}))
        return entries

    def claim_stale(
        self,
        channels: Sequence[str],
        group: str,
        consumer: str,
        min_idle_ms: int,
        count: int = 10,
    ) -> List[StreamEntry]:
        """Take over entries left unacked by any consumer for at least ``min_idle_ms``."""
        entries: List[StreamEntry] = []
        for channel in channels:
            stream = self.stream_key(channel)
            response = self.client.xautoclaim(stream, group, consumer, min_idle_ms, start_id="0-0", count=count)
            for message_id, fields in response[1]:
                entries.append((stream, message_id, fields or {}))
        return entries

    def ack(self, stream: str, group: str, message_id: str) -> None:
        self.client.xack(stream, group, message_id)
