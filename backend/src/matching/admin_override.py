"""Admin overrides applied through the orchestrator's unit of work.

The mutation, its ADMIN_OVERRIDE audit row and the ``admin.override.applied``
event commit together; the outbox is relayed before the snapshot is returned.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List

from events.contracts import AdminOverrideAppliedPayload, AuditAction, BroadcastType, EventType
from models.agent_match import AgentMatch, AgentMatchStatus, AgentTier
from models.matching_state import MatchingState, MatchingStatus
from observability import metrics

from .exceptions import AdminOverrideError, StateTransitionError
from .orchestrator import MatchingOrchestrator, UnitOfWork
from .schemas import AdminOverrideRequest, MatchingStateSnapshot
from .status import EXCLUDING_MATCH_STATUSES

logger = logging.getLogger(__name__)

ADMIN_REMOVED_REASON = "admin_removed"


class AdminOverrideHandler:
    """Applies force_match, remove_agent and extend_deadline overrides.

    Args:
        orchestrator: Orchestrator owning state, locks and side effects
        reason_min_length: Minimum length of the stated reason
    """

    def __init__(self, orchestrator: MatchingOrchestrator, reason_min_length: int = 10):
        self.orchestrator = orchestrator
        self.reason_min_length = reason_min_length

    def apply(self, request_id: str, override: AdminOverrideRequest) -> MatchingStateSnapshot:
        """Apply one override and return the resulting snapshot.

        Raises:
            AdminOverrideError: Reason too short, unknown request, terminal
                state, or no suitable match for the target agent
            LockTimeoutError: If the request lock is not acquired in time
        """
        if len(override.reason.strip()) < self.reason_min_length:
            raise AdminOverrideError(
                f"Reason must be at least {self.reason_min_length} characters",
                code="reason_too_short",
            )

        def work(uow: UnitOfWork) -> MatchingStateSnapshot:
            db = uow.session
            state = db.get(MatchingState, request_id)
            if state is None:
                raise AdminOverrideError(f"Unknown request {request_id}", code="not_found")
            if state.is_terminal:
                raise AdminOverrideError(
                    f"Request {request_id} is already {state.status}",
                    code="terminal_state",
                )

            if override.action == "force_match":
                affected, result = self._force_match(uow, state, override.agent_id)
            elif override.action == "remove_agent":
                affected, result = self._remove_agent(uow, state, override.agent_id)
            else:
                affected, result = self._extend_deadline(uow, state, override.extend_hours)

            publisher = self.orchestrator.publisher
            publisher.record_audit(
                db, AuditAction.ADMIN_OVERRIDE.value, request_id,
                agent_id=override.agent_id, actor_id=override.admin_user_id,
                details={"action": override.action, "reason": override.reason, "result": result},
                correlation_id=uow.correlation_id,
            )
            publisher.enqueue(
                db,
                EventType.ADMIN_OVERRIDE_APPLIED,
                AdminOverrideAppliedPayload(
                    request_id=request_id,
                    admin_user_id=override.admin_user_id,
                    action=override.action,
                    reason=override.reason,
                    affected_agent_ids=affected,
                    result=result,
                ),
                request_id=request_id,
                correlation_id=uow.correlation_id,
                actor_id=override.admin_user_id,
            )
            db.flush()
            return self.orchestrator.build_snapshot(db, state)

        snapshot = self.orchestrator.run_locked(request_id, work, actor_id=override.admin_user_id)
        metrics.admin_overrides_total.labels(action=override.action).inc()
        logger.info(
            f"Admin override {override.action} applied by {override.admin_user_id}",
            extra={"request_id": request_id, "agent_id": override.agent_id}
        )
        return snapshot

    def _pending_match_for(self, uow: UnitOfWork, state: MatchingState, agent_id: str):
        for match in self.orchestrator.pending_matches(uow.session, state.request_id):
            if match.agent_id == agent_id:
                return match
        return None

    def _force_match(self, uow: UnitOfWork, state: MatchingState, agent_id: str):
        orchestrator = self.orchestrator
        match = self._pending_match_for(uow, state, agent_id)
        if match is None:
            previous = orchestrator.find_match(uow.session, state.request_id, agent_id)
            if previous is not None and AgentMatchStatus(previous.status) in EXCLUDING_MATCH_STATUSES:
                raise AdminOverrideError(
                    f"Agent {agent_id} already {previous.status.lower()} request {state.request_id}",
                    code="agent_excluded",
                )
            match = AgentMatch(
                match_id=str(uuid.uuid4()),
                request_id=state.request_id,
                agent_id=agent_id,
                tier=AgentTier.BENCH.value,
                match_score=0.0,
                match_reasons=["Admin override"],
                status=AgentMatchStatus.PENDING.value,
                attempt=state.attempt,
                expires_at=uow.now + timedelta(hours=state.adjusted_timeout_hours),
                created_at=uow.now,
            )
            uow.session.add(match)
            uow.session.flush()

        orchestrator.set_match_status(uow, match, AgentMatchStatus.ACCEPTED)
        superseded = orchestrator.supersede_pending(uow, state)
        try:
            orchestrator.transition(uow, state, MatchingStatus.MATCHED, reason="admin_force_match")
        except StateTransitionError as e:
            raise AdminOverrideError(str(e), code="invalid_state")

        uow.assigned.append(agent_id)
        uow.broadcasts.append((BroadcastType.PROPOSAL_RECEIVED, {
            "requestId": state.request_id,
            "agentId": agent_id,
            "matchId": match.match_id,
        }))
        result: Dict[str, Any] = {
            "match_id": match.match_id,
            "superseded_match_ids": [m.match_id for m in superseded],
        }
        return [agent_id], result

    def _remove_agent(self, uow: UnitOfWork, state: MatchingState, agent_id: str):
        match = self._pending_match_for(uow, state, agent_id)
        if match is None:
            raise AdminOverrideError(
                f"Agent {agent_id} has no pending match for request {state.request_id}",
                code="match_not_found",
            )
        self.orchestrator.close_match(uow, state, match, AgentMatchStatus.SUPERSEDED, ADMIN_REMOVED_REASON)
        return [agent_id], {"match_id": match.match_id, "status": state.status, "attempt": state.attempt}

    def _extend_deadline(self, uow: UnitOfWork, state: MatchingState, hours: int):
        pending = self.orchestrator.pending_matches(uow.session, state.request_id)
        if not pending:
            raise AdminOverrideError(
                f"Request {state.request_id} has no pending matches",
                code="match_not_found",
            )
        affected: List[str] = []
        for match in pending:
            match.expires_at = match.expires_at + timedelta(hours=hours)
            uow.arm.append((match.match_id, match.expires_at))
            affected.append(match.agent_id)
        state.updated_at = uow.now
        uow.session.flush()
        return affected, {
            "extend_hours": hours,
            "expires_at": {m.match_id: m.expires_at.isoformat() for m in pending},
        }
