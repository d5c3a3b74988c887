"""ProcessedEvent model - idempotency ledger for inbound events."""

from sqlalchemy import Column, String, Text

from .base import Base, UTCDateTime, utcnow


class ProcessedEvent(Base):
    """Inbound event that has already been applied.

    dedup_key is "<event_type>:<request_id>:<agent_id>:<attempt>". The row is
    inserted in the same transaction as the mutation it guards.
    """

    __tablename__ = "processed_event"

    dedup_key = Column(String(255), primary_key=True)
    event_type = Column(String(64), nullable=False)
    request_id = Column(String(64), nullable=False)
    event_id = Column(Text, nullable=True)
    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)
