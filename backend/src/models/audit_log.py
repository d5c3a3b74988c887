"""MatchingAuditLog SQLAlchemy model"""

from sqlalchemy import Column, Integer, String, Index

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class MatchingAuditLog(Base):
    """Immutable audit entry for every state-affecting matching action.

    Entries are append-only and should never be updated or deleted.
    """
    __tablename__ = "matching_audit_log"
    __table_args__ = (
        Index("ix_matching_audit_log_request_created", "request_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False)
    request_id = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=True)
    match_id = Column(String(64), nullable=True)
    actor_id = Column(String(64), nullable=True)
    details = Column(PortableJSONB, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
