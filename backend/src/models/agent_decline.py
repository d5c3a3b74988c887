"""AgentDecline model - append-only record of declines, expiries and removals."""

import uuid

from sqlalchemy import Column, String, Text, Index

from .base import Base, UTCDateTime, utcnow


class AgentDecline(Base):
    """Append-only decline record.

    Written when an agent declines, when a match expires (reason "timeout")
    and when an admin removes an agent (reason "admin_removed").
    """

    __tablename__ = "agent_decline"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    match_id = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=False)
    request_id = Column(String(64), nullable=False)
    reason = Column(Text, nullable=False)
    declined_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_agent_decline_request", "request_id"),
    )

    def __repr__(self):
        return f"<AgentDecline(match_id={self.match_id}, agent_id={self.agent_id}, reason={self.reason})>"
