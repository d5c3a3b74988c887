"""OutboxEvent model - canonical events awaiting relay to the event bus."""

from enum import Enum

from sqlalchemy import Column, String, Text, Integer, Index

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class OutboxStatus(str, Enum):
    """Relay status of an outbox row."""
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"


class OutboxEvent(Base):
    """Domain or audit event written in the same transaction as the state change.

    Attributes:
        id: Insertion sequence, the relay order
        event_id: Envelope event id, also the consumer idempotency key
        channel: Bus channel, equal to the envelope event_type
        request_id: Request the event belongs to (relay ordering)
        envelope: Serialized event envelope
        status: PENDING until the relay confirms publication
        attempts: Number of failed relay attempts
        last_error: Last transport error message
    """

    __tablename__ = "outbox_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, unique=True)
    channel = Column(String(64), nullable=False)
    request_id = Column(String(64), nullable=True)
    envelope = Column(PortableJSONB, nullable=False)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    published_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbox_event_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_id={self.event_id}, channel={self.channel}, status={self.status})>"
