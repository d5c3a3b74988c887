"""Transactional event publisher.

Canonical domain events and audit events are written to the outbox in the
same transaction as the state change (``enqueue`` / ``record_audit``) and
relayed to the bus after commit (``relay_pending``). A relay that keeps
failing leaves the row PENDING for the periodic relay task; nothing is
dropped.

UI broadcasts are best-effort: failures are logged, counted and swallowed.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from audit.service import log_audit_event
from matching.exceptions import EventPublishError
from models.base import utcnow
from models.outbox_event import OutboxEvent, OutboxStatus
from observability.metrics import (
    broadcast_failures_total,
    outbox_pending,
    outbox_relay_failures_total,
)

from .bus import EventBusPort
from .contracts import AuditLogPayload, BroadcastType, EventType, build_envelope

logger = logging.getLogger(__name__)


class EventPublisher:
    """Outbox writer, relay and broadcast sender.

    Args:
        bus: Canonical event bus
        broadcaster: Object with ``send(event_type, payload)``; None disables broadcasts
        max_retries: Publish retries per relay pass
        retry_delay_base: Base delay for exponential backoff in seconds
        sleep: Sleep function (injected in tests)
    """

    def __init__(
        self,
        bus: EventBusPort,
        broadcaster=None,
        max_retries: int = 3,
        retry_delay_base: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bus = bus
        self.broadcaster = broadcaster
        self.max_retries = max_retries
        self.retry_delay_base = retry_delay_base
        self.sleep = sleep

    # =========================================================================
    # OUTBOX WRITES (inside the caller's transaction)
    # =========================================================================

    def enqueue(
        self,
        db: Session,
        event_type: EventType,
        payload: BaseModel,
        request_id: str,
        correlation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> OutboxEvent:
        """Write a canonical event to the outbox."""
        envelope = build_envelope(
            event_type,
            payload,
            correlation_id=correlation_id or request_id,
            actor_id=actor_id,
        )
        row = OutboxEvent(
            event_id=envelope.event_id,
            channel=event_type.value,
            request_id=request_id,
            envelope=envelope.model_dump(mode="json"),
            status=OutboxStatus.PENDING.value,
        )
        db.add(row)
        db.flush()
        return row

    def record_audit(
        self,
        db: Session,
        action: str,
        request_id: str,
        agent_id: Optional[str] = None,
        match_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> OutboxEvent:
        """Write the audit row and its ``matching.audit.log`` event."""
        entry = log_audit_event(
            db,
            request_id=request_id,
            action=action,
            agent_id=agent_id,
            match_id=match_id,
            actor_id=actor_id,
            details=details,
        )
        payload = AuditLogPayload(
            audit_id=entry.id,
            action=action,
            request_id=request_id,
            agent_id=agent_id,
            match_id=match_id,
            actor_id=actor_id,
            details=details,
        )
        return self.enqueue(
            db,
            EventType.AUDIT_LOG,
            payload,
            request_id=request_id,
            correlation_id=correlation_id,
            actor_id=actor_id,
        )

    # =========================================================================
    # RELAY (after commit)
    # =========================================================================

    def publish_with_retry(self, channel: str, envelope: Dict[str, Any]) -> str:
        """Publish one envelope, retrying with exponential backoff.

        Raises:
            EventPublishError: After ``max_retries + 1`` failed attempts
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return self.bus.publish(channel, envelope)
            except EventPublishError as e:
                last_error = e
                outbox_relay_failures_total.labels(channel=channel).inc()
                logger.warning(
                    f"Publish failed on attempt {attempt + 1}: {e}",
                    extra={"channel": channel, "event_id": envelope.get("event_id"), "attempt": attempt + 1}
                )
                if attempt < self.max_retries:
                    self.sleep(self.retry_delay_base * (2 ** attempt))

        raise EventPublishError(
            f"Publish to {channel} failed after {self.max_retries + 1} attempts: {last_error}"
        )

    def relay_pending(self, db: Session, request_id: Optional[str] = None, limit: int = 100) -> int:
        """Publish PENDING outbox rows in creation order and commit their status.

        Relay stops at the first row that cannot be published so per-request
        ordering is preserved; that row and the rest stay PENDING.

        Args:
            db: Session owned by the caller; this method commits it
            request_id: Restrict to one request (post-commit relay) or None (periodic relay)
            limit: Maximum rows per pass

        Returns:
            Number of rows published
        """
        stmt = select(OutboxEvent).where(OutboxEvent.status == OutboxStatus.PENDING.value)
        if request_id is not None:
            stmt = stmt.where(OutboxEvent.request_id == request_id)
        stmt = stmt.order_by(OutboxEvent.id).limit(limit)
        rows = list(db.scalars(stmt))

        published = 0
        for row in rows:
            try:
                self.publish_with_retry(row.channel, row.envelope)
            except EventPublishError as e:
                row.attempts = (row.attempts or 0) + 1
                row.last_error = str(e)
                db.commit()
                logger.error(
                    f"Outbox relay left event pending: {e}",
                    extra={"event_id": row.event_id, "channel": row.channel, "request_id": row.request_id}
                )
                break
            row.status = OutboxStatus.PUBLISHED.value
            row.published_at = utcnow()
            db.commit()
            published += 1

        outbox_pending.set(len(rows) - published)
        return published

    # =========================================================================
    # BROADCASTS (best effort)
    # =========================================================================

    def broadcast(self, broadcast_type: BroadcastType, payload: Dict[str, Any]) -> bool:
        """Send a UI broadcast. Never raises.

        Returns:
            True if the gateway accepted the broadcast
        """
        if self.broadcaster is None:
            return False
        try:
            self.broadcaster.send(broadcast_type.value, payload)
            return True
        except Exception as e:
            broadcast_failures_total.labels(broadcast_type=broadcast_type.value).inc()
            logger.warning(
                f"Broadcast {broadcast_type.value} failed: {e}",
                extra={"broadcast_type": broadcast_type.value}
            )
            return False
