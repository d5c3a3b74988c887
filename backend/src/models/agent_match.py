"""AgentMatch model - one candidate agent offered a request in one round."""

from enum import Enum

from sqlalchemy import Column, String, Integer, Float, Index

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class AgentTier(str, Enum):
    """Tier of a matched agent within a selection round."""
    STAR = "STAR"
    BENCH = "BENCH"


class AgentMatchStatus(str, Enum):
    """Status of a single agent match.

    Values:
        PENDING: Awaiting the agent's response until expires_at
        ACCEPTED: Agent confirmed the request
        DECLINED: Agent declined (or was removed by an admin)
        EXPIRED: Response window elapsed without an answer
        SUPERSEDED: Closed because the request moved on (accepted elsewhere,
            rematched or cancelled)
    """
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    SUPERSEDED = "SUPERSEDED"


class AgentMatch(Base):
    """Agent match row. Rows are never deleted.

    At most one PENDING or ACCEPTED row exists per (request_id, agent_id).
    """

    __tablename__ = "agent_match"

    match_id = Column(String(64), primary_key=True)
    request_id = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=False)
    tier = Column(String(10), nullable=False)
    match_score = Column(Float, nullable=False)
    match_reasons = Column(PortableJSONB, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=AgentMatchStatus.PENDING.value)
    attempt = Column(Integer, nullable=False, default=0)
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    responded_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_agent_match_request_status", "request_id", "status"),
        Index("ix_agent_match_request_agent", "request_id", "agent_id"),
        Index("ix_agent_match_status_expires", "status", "expires_at"),
    )

    def __repr__(self):
        return f"<AgentMatch(match_id={self.match_id}, agent_id={self.agent_id}, status={self.status})>"
