"""Pydantic schemas for matching endpoints and state snapshots."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AgentMatchView(BaseModel):
    """Agent match as exposed to callers."""
    model_config = ConfigDict(from_attributes=True)

    match_id: str
    agent_id: str
    tier: str
    match_score: float
    match_reasons: List[str]
    status: str
    attempt: int
    expires_at: datetime
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None


class MatchingStateSnapshot(BaseModel):
    """Matching state of one request with all its matches."""
    request_id: str
    status: str
    attempt: int
    max_attempts: int
    previous_match_ids: List[str]
    failure_reason: Optional[str] = None
    is_peak_season: bool
    adjusted_min_agents: int
    adjusted_timeout_hours: int
    total_agents_evaluated: int
    pending_matches: int
    matches: List[AgentMatchView]
    created_at: datetime
    updated_at: datetime


OverrideAction = Literal["force_match", "remove_agent", "extend_deadline"]


class AdminOverrideRequest(BaseModel):
    """Admin override command.

    ``agent_id`` is required for force_match and remove_agent;
    ``extend_hours`` is required for extend_deadline. Minimum reason length
    is enforced by the handler from configuration.
    """
    action: OverrideAction
    admin_user_id: str = Field(min_length=1, max_length=64)
    reason: str = Field(min_length=1, max_length=1000)
    agent_id: Optional[str] = Field(default=None, max_length=64)
    extend_hours: Optional[int] = Field(default=None, ge=1, le=168)

    @model_validator(mode="after")
    def validate_action_arguments(self) -> "AdminOverrideRequest":
        if self.action in ("force_match", "remove_agent") and not self.agent_id:
            raise ValueError(f"agent_id is required for {self.action}")
        if self.action == "extend_deadline" and self.extend_hours is None:
            raise ValueError("extend_hours is required for extend_deadline")
        return self
