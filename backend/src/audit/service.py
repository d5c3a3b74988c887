"""Audit logging service for matching actions.

Provides a centralized interface for creating immutable audit log entries.
Every state-affecting matching action is logged through this service in the
same transaction as the mutation it describes.

Audit actions:
- MATCHING_STARTED, MATCHING_COMPLETED, MATCHING_FAILED
- AGENT_SELECTED, AGENT_ACCEPTED, AGENT_DECLINED, AGENT_TIMEOUT
- REMATCH_STARTED, STATUS_CHANGED, REQUEST_UPDATED
- ADMIN_OVERRIDE
- PEAK_SEASON_ACTIVATED, TIER_FALLBACK_USED
- ANOMALY
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.audit_log import MatchingAuditLog


def log_audit_event(
    db: Session,
    request_id: str,
    action: str,
    agent_id: Optional[str] = None,
    match_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> MatchingAuditLog:
    """Create an audit log entry.

    This function does not validate action names; callers pass values of
    events.contracts.AuditAction.

    Args:
        db: Database session
        request_id: Request the action applies to
        action: Audit action (e.g., "AGENT_DECLINED")
        agent_id: Agent involved, if any
        match_id: Match involved, if any
        actor_id: Admin user for overrides (None for system actions)
        details: Additional context as JSON

    Returns:
        MatchingAuditLog: The created audit log entry

    Example:
        log_audit_event(
            db=db,
            request_id="req-123",
            action="AGENT_DECLINED",
            agent_id="agent-7",
            match_id=match.match_id,
            details={"reason": "workload", "remaining_matches": 1},
        )
    """
    audit_entry = MatchingAuditLog(
        request_id=request_id,
        action=action,
        agent_id=agent_id,
        match_id=match_id,
        actor_id=actor_id,
        details=details,
    )

    db.add(audit_entry)
    db.flush()  # Get ID without committing transaction

    return audit_entry


def list_audit_events(db: Session, request_id: str) -> List[MatchingAuditLog]:
    """Audit trail for a request, oldest first."""
    stmt = (
        select(MatchingAuditLog)
        .where(MatchingAuditLog.request_id == request_id)
        .order_by(MatchingAuditLog.id)
    )
    return list(db.scalars(stmt))
