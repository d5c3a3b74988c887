"""Matching API endpoints.

GET /matching/{request_id} returns the matching snapshot; POST
/matching/{request_id}/overrides applies an admin override and returns the
resulting snapshot.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from dependencies import get_admin_handler, get_orchestrator

from .admin_override import AdminOverrideHandler
from .exceptions import AdminOverrideError, LockTimeoutError
from .orchestrator import MatchingOrchestrator
from .schemas import AdminOverrideRequest, MatchingStateSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/matching", tags=["matching"])

OVERRIDE_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "match_not_found": status.HTTP_404_NOT_FOUND,
    "reason_too_short": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "terminal_state": status.HTTP_409_CONFLICT,
    "invalid_state": status.HTTP_409_CONFLICT,
    "agent_excluded": status.HTTP_409_CONFLICT,
}


@router.get("/{request_id}", response_model=MatchingStateSnapshot)
def get_matching_state(
    request_id: str,
    orchestrator: MatchingOrchestrator = Depends(get_orchestrator),
):
    """Get the matching state of a request with all its matches.

    Raises:
        HTTPException 404: If no matching state exists for the request
    """
    snapshot = orchestrator.get_snapshot(request_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No matching state for request {request_id}",
        )
    return snapshot


@router.post("/{request_id}/overrides", response_model=MatchingStateSnapshot)
def apply_override(
    request_id: str,
    override: AdminOverrideRequest,
    handler: AdminOverrideHandler = Depends(get_admin_handler),
):
    """Apply an admin override (force_match, remove_agent, extend_deadline).

    Raises:
        HTTPException 404: Unknown request or no pending match for the agent
        HTTPException 409: Request is terminal or the agent is excluded
        HTTPException 422: Reason too short
        HTTPException 503: Request lock busy, retry later
    """
    try:
        return handler.apply(request_id, override)
    except AdminOverrideError as e:
        logger.warning(
            f"Admin override rejected: {e}",
            extra={"request_id": request_id, "agent_id": override.agent_id}
        )
        raise HTTPException(
            status_code=OVERRIDE_ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST),
            detail={"error": e.code, "message": str(e)},
        )
    except LockTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
