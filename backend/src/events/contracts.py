"""Event contracts.

Outbound events share one envelope (event_id, event_type, timestamp, version,
correlation_id, source, payload, metadata). Inbound events are a tagged union
discriminated on ``event_type``.
"""

import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from matching.exceptions import InboundEventValidationError

EVENT_VERSION = "1.0"
EVENT_SOURCE = "matching-service"


class EventType(str, Enum):
    """Published event types (also the bus channel names)."""
    AGENTS_MATCHED = "agents.matched"
    AGENT_DECLINED = "agent.declined"
    MATCHING_FAILED = "matching.failed"
    STATUS_CHANGED = "matching.status_changed"
    REMATCH_INITIATED = "rematch.initiated"
    ADMIN_OVERRIDE_APPLIED = "admin.override.applied"
    AUDIT_LOG = "matching.audit.log"


class BroadcastType(str, Enum):
    """Best-effort UI broadcast types."""
    NEW_MATCH = "new_match"
    REQUEST_UPDATE = "request_update"
    MATCH_EXPIRED = "match_expired"
    PROPOSAL_RECEIVED = "proposal_received"


class AuditAction(str, Enum):
    MATCHING_STARTED = "MATCHING_STARTED"
    MATCHING_COMPLETED = "MATCHING_COMPLETED"
    MATCHING_FAILED = "MATCHING_FAILED"
    AGENT_SELECTED = "AGENT_SELECTED"
    AGENT_ACCEPTED = "AGENT_ACCEPTED"
    AGENT_DECLINED = "AGENT_DECLINED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    REMATCH_STARTED = "REMATCH_STARTED"
    STATUS_CHANGED = "STATUS_CHANGED"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"
    PEAK_SEASON_ACTIVATED = "PEAK_SEASON_ACTIVATED"
    TIER_FALLBACK_USED = "TIER_FALLBACK_USED"
    REQUEST_UPDATED = "REQUEST_UPDATED"
    ANOMALY = "ANOMALY"


# =============================================================================
# OUTBOUND
# =============================================================================

class EventMetadata(BaseModel):
    trace_id: Optional[str] = None
    actor_id: Optional[str] = None


class EventEnvelope(BaseModel):
    """Canonical outbound envelope."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = EVENT_VERSION
    correlation_id: str
    source: str = EVENT_SOURCE
    payload: Dict[str, Any]
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class MatchSummary(BaseModel):
    match_id: str
    agent_id: str
    tier: str
    match_score: float
    match_reasons: List[str]
    status: str
    attempt: int
    expires_at: datetime


class AgentsMatchedPayload(BaseModel):
    request_id: str
    matches: List[MatchSummary]
    star_agents_count: int
    bench_agents_count: int
    total_candidates_evaluated: int
    matching_duration_ms: float
    is_peak_season: bool
    attempt: int
    expires_at: datetime


class DeclineSummary(BaseModel):
    match_id: str
    agent_id: str
    request_id: str
    reason: str
    declined_at: datetime


class AgentDeclinedPayload(BaseModel):
    request_id: str
    decline: DeclineSummary
    remaining_matches: int
    requires_rematch: bool


class MatchingFailedPayload(BaseModel):
    request_id: str
    reason: str
    attempts_made: int
    total_agents_evaluated: int
    is_peak_season: bool


class StatusChangedPayload(BaseModel):
    request_id: str
    previous_status: str
    new_status: str
    reason: Optional[str] = None


class RematchInitiatedPayload(BaseModel):
    request_id: str
    attempt: int
    previous_match_ids: List[str]
    reason: str


class AdminOverrideAppliedPayload(BaseModel):
    request_id: str
    admin_user_id: str
    action: str
    reason: str
    affected_agent_ids: List[str]
    result: Dict[str, Any]


class AuditLogPayload(BaseModel):
    audit_id: int
    action: str
    request_id: str
    agent_id: Optional[str] = None
    match_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


def build_envelope(
    event_type: EventType,
    payload: BaseModel,
    correlation_id: str,
    actor_id: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> EventEnvelope:
    """Wrap a typed payload in the canonical envelope."""
    return EventEnvelope(
        event_type=event_type.value,
        correlation_id=correlation_id,
        payload=payload.model_dump(mode="json"),
        metadata=EventMetadata(trace_id=trace_id or correlation_id, actor_id=actor_id),
    )


# =============================================================================
# INBOUND
# =============================================================================

class RequestPayload(BaseModel):
    request_id: str = Field(min_length=1, max_length=64)
    destinations: List[str] = Field(min_length=1)
    start_date: date
    end_date: date
    travel_style: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)
    budget_currency: Optional[str] = None
    travelers: int = Field(default=1, ge=1)
    user_id: Optional[str] = None

    @field_validator("destinations")
    @classmethod
    def validate_destinations(cls, v: List[str]) -> List[str]:
        cleaned = [d.strip() for d in v if d and d.strip()]
        if not cleaned:
            raise ValueError("at least one non-empty destination is required")
        return cleaned

    @field_validator("end_date")
    @classmethod
    def validate_end_date(cls, v: date, info) -> date:
        start = info.data.get("start_date")
        if start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class RequestCancelledPayload(BaseModel):
    request_id: str = Field(min_length=1, max_length=64)
    reason: Optional[str] = None


class AgentResponsePayload(BaseModel):
    request_id: str = Field(min_length=1, max_length=64)
    agent_id: str = Field(min_length=1, max_length=64)
    match_id: Optional[str] = None


DECLINE_REASONS = frozenset({
    "declined",
    "unavailable",
    "workload",
    "region",
    "specialization",
    "timeout",
    "admin_removed",
})


class AgentDeclinePayload(AgentResponsePayload):
    reason: str = "declined"

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, v: str) -> str:
        """Unknown reasons collapse to "declined"."""
        v = (v or "").strip().lower()
        return v if v in DECLINE_REASONS else "declined"


class _InboundBase(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class RequestCreated(_InboundBase):
    event_type: Literal["request.created"]
    payload: RequestPayload


class RequestUpdated(_InboundBase):
    event_type: Literal["request.updated"]
    payload: RequestPayload


class RequestCancelled(_InboundBase):
    event_type: Literal["request.cancelled"]
    payload: RequestCancelledPayload


class AgentConfirmed(_InboundBase):
    event_type: Literal["agent.confirmed"]
    payload: AgentResponsePayload


class AgentDeclinedInbound(_InboundBase):
    event_type: Literal["agent.declined"]
    payload: AgentDeclinePayload


InboundEvent = Annotated[
    Union[RequestCreated, RequestUpdated, RequestCancelled, AgentConfirmed, AgentDeclinedInbound],
    Field(discriminator="event_type"),
]

INBOUND_EVENT_TYPES = (
    "request.created",
    "request.updated",
    "request.cancelled",
    "agent.confirmed",
    "agent.declined",
)

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound_event(raw: Union[str, bytes, Dict[str, Any]]):
    """Validate a raw inbound message into its typed event.

    Raises:
        InboundEventValidationError: On malformed JSON, unknown event_type
            or an invalid payload
    """
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return _inbound_adapter.validate_python(raw)
    except json.JSONDecodeError as e:
        raise InboundEventValidationError(f"Inbound event is not valid JSON: {e}")
    except ValidationError as e:
        raise InboundEventValidationError(
            f"Invalid inbound event: {e.error_count()} error(s)",
            errors=e.errors(include_url=False),
        )
