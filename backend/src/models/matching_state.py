"""MatchingState model - one matching lifecycle per travel request."""

from enum import Enum

from sqlalchemy import Column, String, Text, Integer, Boolean, Index

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class MatchingStatus(str, Enum):
    """Lifecycle status of a request's agent matching.

    Values:
        MATCHING: Request received, first selection round running
        AGENTS_MATCHED: Candidate agents selected, awaiting responses
        REMATCHING: Too many declines, new selection round running
        MATCHED: An agent accepted (terminal)
        FAILED: No candidates or attempts exhausted (terminal)
        CANCELLED: Request withdrawn by the requester (terminal)
    """
    MATCHING = "MATCHING"
    AGENTS_MATCHED = "AGENTS_MATCHED"
    REMATCHING = "REMATCHING"
    MATCHED = "MATCHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class MatchingState(Base):
    """Per-request matching state, owned by the orchestrator.

    Attributes:
        request_id: Travel request identifier (primary key)
        status: Current MatchingStatus value
        attempt: Selection round counter, 0 for the first round
        previous_match_ids: Match ids of earlier rounds, never reused
        failure_reason: Structured reason when status is FAILED
        is_peak_season: Whether peak-season policy applied at intake
        adjusted_min_agents: Minimum live matches required per round
        adjusted_timeout_hours: Response window for each match
        total_agents_evaluated: Candidates scored across all rounds
        request_snapshot: Last known request projection used for rematch rounds
        created_at / updated_at: Timestamps (UTC)
    """

    __tablename__ = "matching_state"

    request_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default=MatchingStatus.MATCHING.value)
    attempt = Column(Integer, nullable=False, default=0)
    previous_match_ids = Column(PortableJSONB, nullable=False, default=list)
    failure_reason = Column(Text, nullable=True)
    is_peak_season = Column(Boolean, nullable=False, default=False)
    adjusted_min_agents = Column(Integer, nullable=False)
    adjusted_timeout_hours = Column(Integer, nullable=False)
    total_agents_evaluated = Column(Integer, nullable=False, default=0)
    request_snapshot = Column(PortableJSONB, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_matching_state_status_updated", "status", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            MatchingStatus.MATCHED.value,
            MatchingStatus.FAILED.value,
            MatchingStatus.CANCELLED.value,
        )

    def __repr__(self):
        return f"<MatchingState(request_id={self.request_id}, status={self.status}, attempt={self.attempt})>"
