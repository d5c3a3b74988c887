"""SQLAlchemy models for the matching service"""

from .base import Base, PortableJSONB, UTCDateTime, utcnow
from .matching_state import MatchingState, MatchingStatus
from .agent_match import AgentMatch, AgentMatchStatus, AgentTier
from .agent_decline import AgentDecline
from .agent_profile import AgentProfile
from .audit_log import MatchingAuditLog
from .outbox_event import OutboxEvent, OutboxStatus
from .processed_event import ProcessedEvent

__all__ = [
    "Base",
    "PortableJSONB",
    "UTCDateTime",
    "utcnow",
    "MatchingState",
    "MatchingStatus",
    "AgentMatch",
    "AgentMatchStatus",
    "AgentTier",
    "AgentDecline",
    "AgentProfile",
    "MatchingAuditLog",
    "OutboxEvent",
    "OutboxStatus",
    "ProcessedEvent",
]
