"""Matching orchestrator.

Owns MatchingState and AgentMatch mutations. Every entry point (inbound
event, timer callback, admin override) runs as one unit of work under the
per-request lock:

    lock(request_id)
      session: validate -> mutate -> audit + outbox rows -> commit
      cancel timers of closed matches, arm timers of new matches
      count accepted bookings against agent workload
      relay the request's outbox rows to the bus
      send best-effort UI broadcasts
    unlock

A timer that fires while the lock is held waits, then finds its match no
longer PENDING and is discarded.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from events.contracts import (
    AgentConfirmed,
    AgentDeclinedInbound,
    AgentDeclinedPayload,
    AgentsMatchedPayload,
    AuditAction,
    BroadcastType,
    DeclineSummary,
    EventType,
    MatchingFailedPayload,
    MatchSummary,
    RematchInitiatedPayload,
    RequestCancelled,
    RequestCreated,
    RequestUpdated,
    StatusChangedPayload,
)
from events.publisher import EventPublisher
from infrastructure.retry import call_with_retry
from models.agent_decline import AgentDecline
from models.agent_match import AgentMatch, AgentMatchStatus
from models.base import utcnow
from models.matching_state import MatchingState, MatchingStatus
from models.processed_event import ProcessedEvent
from observability import metrics

from .exceptions import CandidateRepositoryError
from .locks import RequestLocks
from .peak_season import PeakSeasonInfo, PeakSeasonPolicy
from .ports import CandidateRepositoryPort, MatchingRequest, TimeoutSchedulerPort
from .rematch import RematchAction, decide_next_action
from .schemas import AgentMatchView, MatchingStateSnapshot
from .scorer import AgentScorer
from .selection import select_agents
from .status import validate_match_transition, validate_transition

logger = logging.getLogger(__name__)

FAIL_REASON_NO_CANDIDATES = "no_candidates"
FAIL_REASON_NO_STAR = "no_star_agent"
REMATCH_REASON = "insufficient_remaining_matches"


class EventOutcome(str, Enum):
    """Result of handling one inbound event or timer."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"  # late or rule-violating event, audit-logged as anomaly


@dataclass(frozen=True)
class MatchingConfig:
    """Orchestrator policy values."""
    min_agents: int = 2
    timeout_hours: int = 24
    max_attempts: int = 3
    bench_fallback: bool = True
    candidate_fetch_retries: int = 2
    retry_delay_base: float = 0.5
    relay_batch_size: int = 100

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        return cls(
            min_agents=settings.MATCHING_MIN_AGENTS,
            timeout_hours=settings.AGENT_RESPONSE_TIMEOUT_HOURS,
            max_attempts=settings.MAX_MATCHING_ATTEMPTS,
            bench_fallback=settings.ENABLE_BENCH_FALLBACK,
            candidate_fetch_retries=settings.CANDIDATE_FETCH_MAX_RETRIES,
            retry_delay_base=settings.EVENT_PUBLISH_RETRY_BASE_SECONDS,
            relay_batch_size=settings.OUTBOX_RELAY_BATCH_SIZE,
        )


@dataclass
class UnitOfWork:
    """Session plus the side effects to run after commit."""
    session: Session
    request_id: str
    now: datetime
    correlation_id: str
    actor_id: Optional[str] = None
    arm: List[Tuple[str, datetime]] = field(default_factory=list)
    cancel: List[str] = field(default_factory=list)
    assigned: List[str] = field(default_factory=list)  # agents whose workload grows after commit
    broadcasts: List[Tuple[BroadcastType, Dict[str, Any]]] = field(default_factory=list)


def dedup_key(event_type: str, request_id: str, agent_id: Optional[str], attempt: int) -> str:
    return f"{event_type}:{request_id}:{agent_id or '-'}:{attempt}"


class MatchingOrchestrator:
    """Drives the matching state machine for every request.

    Args:
        session_factory: Returns a new SQLAlchemy session
        candidates: Agent directory
        scorer: Agent scorer
        peak_policy: Peak-season policy
        scheduler: Match expiry timers; its callback is set to handle_timeout
        publisher: Outbox writer and relay
        locks: Per-request locks
        config: Matching policy
        clock: Returns the current aware UTC datetime
        sleep: Backoff sleep for candidate fetch retries
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        candidates: CandidateRepositoryPort,
        scorer: AgentScorer,
        peak_policy: PeakSeasonPolicy,
        scheduler: TimeoutSchedulerPort,
        publisher: EventPublisher,
        locks: RequestLocks,
        config: Optional[MatchingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.candidates = candidates
        self.scorer = scorer
        self.peak_policy = peak_policy
        self.scheduler = scheduler
        self.publisher = publisher
        self.locks = locks
        self.config = config or MatchingConfig()
        self.clock = clock
        self.sleep = sleep
        self.scheduler.set_callback(self.handle_timeout)

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    def run_locked(
        self,
        request_id: str,
        work: Callable[[UnitOfWork], Any],
        correlation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Any:
        """Run ``work`` in a transaction under the request lock, then apply side effects.

        Raises:
            LockTimeoutError: If the request lock is not acquired in time
        """
        with self.locks.hold(request_id):
            session = self.session_factory()
            uow = UnitOfWork(
                session=session,
                request_id=request_id,
                now=self.clock(),
                correlation_id=correlation_id or request_id,
                actor_id=actor_id,
            )
            try:
                result = work(uow)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

            self._apply_side_effects(uow)
            return result

    def _apply_side_effects(self, uow: UnitOfWork) -> None:
        for match_id in uow.cancel:
            self.scheduler.cancel(match_id)
        for match_id, expires_at in uow.arm:
            self.scheduler.arm(match_id, uow.request_id, expires_at)

        for agent_id in uow.assigned:
            try:
                self.candidates.increment_workload(agent_id)
            except CandidateRepositoryError as e:
                logger.error(
                    f"Workload of agent {agent_id} not incremented: {e}",
                    extra={"request_id": uow.request_id, "agent_id": agent_id}
                )

        self.relay(uow.request_id)

        for broadcast_type, payload in uow.broadcasts:
            self.publisher.broadcast(broadcast_type, payload)

    def relay(self, request_id: Optional[str] = None) -> int:
        """Relay pending outbox rows (one request or all)."""
        session = self.session_factory()
        try:
            return self.publisher.relay_pending(session, request_id=request_id, limit=self.config.relay_batch_size)
        finally:
            session.close()

    # =========================================================================
    # INBOUND EVENTS
    # =========================================================================

    def handle_event(self, event) -> EventOutcome:
        """Dispatch a validated inbound event.

        Raises:
            LockTimeoutError, CandidateRepositoryError: Transient, safe to redeliver
        """
        if isinstance(event, RequestCreated):
            request = MatchingRequest(**event.payload.model_dump())
            outcome = self.start_matching(request, correlation_id=event.correlation_id, event_id=event.event_id)
        elif isinstance(event, RequestUpdated):
            request = MatchingRequest(**event.payload.model_dump())
            outcome = self.update_request(request, correlation_id=event.correlation_id, event_id=event.event_id)
        elif isinstance(event, RequestCancelled):
            outcome = self.cancel_request(
                event.payload.request_id,
                reason=event.payload.reason,
                correlation_id=event.correlation_id,
            )
        elif isinstance(event, AgentConfirmed):
            outcome = self.accept(
                event.payload.request_id,
                event.payload.agent_id,
                match_id=event.payload.match_id,
                correlation_id=event.correlation_id,
            )
        elif isinstance(event, AgentDeclinedInbound):
            outcome = self.decline(
                event.payload.request_id,
                event.payload.agent_id,
                reason=event.payload.reason,
                match_id=event.payload.match_id,
                correlation_id=event.correlation_id,
            )
        else:
            raise TypeError(f"Unhandled inbound event type: {type(event).__name__}")

        metrics.inbound_events_total.labels(event_type=event.event_type, result=outcome.value).inc()
        return outcome

    def start_matching(
        self,
        request: MatchingRequest,
        correlation_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> EventOutcome:
        """Create the matching state for a new request and run the first round."""

        def work(uow: UnitOfWork) -> EventOutcome:
            db = uow.session
            key = dedup_key("request.created", request.request_id, None, 0)
            if db.get(MatchingState, request.request_id) is not None or db.get(ProcessedEvent, key) is not None:
                logger.info(f"Duplicate request.created ignored", extra={"request_id": request.request_id})
                return EventOutcome.DUPLICATE

            state = MatchingState(
                request_id=request.request_id,
                status=MatchingStatus.MATCHING.value,
                attempt=0,
                previous_match_ids=[],
                is_peak_season=False,
                adjusted_min_agents=self.config.min_agents,
                adjusted_timeout_hours=self.config.timeout_hours,
                total_agents_evaluated=0,
                request_snapshot=request.to_snapshot(),
                created_at=uow.now,
                updated_at=uow.now,
            )
            db.add(state)
            self._mark_processed(uow, key, "request.created", event_id)
            db.flush()

            self.publisher.record_audit(
                db, AuditAction.MATCHING_STARTED.value, request.request_id,
                details={
                    "base_min_agents": self.config.min_agents,
                    "base_timeout_hours": self.config.timeout_hours,
                },
                correlation_id=uow.correlation_id,
            )
            logger.info(
                f"Matching started for request {request.request_id}",
                extra={"request_id": request.request_id}
            )
            self.run_selection_round(uow, state, request)
            return EventOutcome.APPLIED

        return self.run_locked(request.request_id, work, correlation_id=correlation_id)

    def update_request(
        self,
        request: MatchingRequest,
        correlation_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> EventOutcome:
        """Refresh the request snapshot used by later rounds. Never reselects."""

        def work(uow: UnitOfWork) -> EventOutcome:
            db = uow.session
            state = db.get(MatchingState, request.request_id)
            if state is None:
                logger.warning("request.updated for unknown request", extra={"request_id": request.request_id})
                return EventOutcome.NOT_FOUND

            key = dedup_key("request.updated", request.request_id, event_id, state.attempt)
            if event_id and db.get(ProcessedEvent, key) is not None:
                return EventOutcome.DUPLICATE
            if event_id:
                self._mark_processed(uow, key, "request.updated", event_id)

            if state.is_terminal:
                self._record_anomaly(uow, state, "update_on_terminal_request")
                return EventOutcome.IGNORED

            state.request_snapshot = request.to_snapshot()
            state.updated_at = uow.now
            self.refresh_peak_season(uow, state, request)
            self.publisher.record_audit(
                db, AuditAction.REQUEST_UPDATED.value, request.request_id,
                details={"destinations": request.destinations, "travel_style": request.travel_style},
                correlation_id=uow.correlation_id,
            )
            return EventOutcome.APPLIED

        return self.run_locked(request.request_id, work, correlation_id=correlation_id)

    def cancel_request(
        self,
        request_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EventOutcome:
        """Supersede all PENDING matches, cancel their timers, move to CANCELLED."""

        def work(uow: UnitOfWork) -> EventOutcome:
            db = uow.session
            state = db.get(MatchingState, request_id)
            if state is None:
                logger.warning(f"request.cancelled for unknown request", extra={"request_id": request_id})
                return EventOutcome.NOT_FOUND

            key = dedup_key("request.cancelled", request_id, None, 0)
            if db.get(ProcessedEvent, key) is not None:
                return EventOutcome.DUPLICATE
            self._mark_processed(uow, key, "request.cancelled", None)

            if state.is_terminal:
                self._record_anomaly(uow, state, "cancel_on_terminal_request")
                return EventOutcome.IGNORED

            superseded = self.supersede_pending(uow, state)
            self.transition(uow, state, MatchingStatus.CANCELLED, reason=reason or "request_cancelled")
            uow.broadcasts.append((BroadcastType.REQUEST_UPDATE, {
                "requestId": request_id,
                "status": MatchingStatus.CANCELLED.value,
            }))
            logger.info(
                f"Matching cancelled, {len(superseded)} pending matches superseded",
                extra={"request_id": request_id}
            )
            return EventOutcome.APPLIED

        return self.run_locked(request_id, work, correlation_id=correlation_id)

    def accept(
        self,
        request_id: str,
        agent_id: str,
        match_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EventOutcome:
        """Accept a match: supersede the rest and move to MATCHED."""

        def work(uow: UnitOfWork) -> EventOutcome:
            db = uow.session
            state, match, outcome = self._load_response_target(uow, "agent.confirmed", request_id, agent_id, match_id)
            if outcome is not None:
                return outcome

            self.set_match_status(uow, match, AgentMatchStatus.ACCEPTED)
            self.supersede_pending(uow, state)
            self.publisher.record_audit(
                db, AuditAction.AGENT_ACCEPTED.value, request_id,
                agent_id=agent_id, match_id=match.match_id,
                details={"tier": match.tier, "attempt": match.attempt},
                correlation_id=uow.correlation_id,
            )
            self.transition(uow, state, MatchingStatus.MATCHED, reason="agent_accepted")
            uow.assigned.append(agent_id)
            metrics.agent_responses_total.labels(response="accepted").inc()
            uow.broadcasts.append((BroadcastType.PROPOSAL_RECEIVED, {
                "requestId": request_id,
                "agentId": agent_id,
                "matchId": match.match_id,
            }))
            logger.info(
                f"Agent {agent_id} accepted request {request_id}",
                extra={"request_id": request_id, "agent_id": agent_id, "match_id": match.match_id}
            )
            return EventOutcome.APPLIED

        return self.run_locked(request_id, work, correlation_id=correlation_id)

    def decline(
        self,
        request_id: str,
        agent_id: str,
        reason: str = "declined",
        match_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EventOutcome:
        """Decline a match and let the coordinator decide what follows."""

        def work(uow: UnitOfWork) -> EventOutcome:
            state, match, outcome = self._load_response_target(uow, "agent.declined", request_id, agent_id, match_id)
            if outcome is not None:
                return outcome
            self.close_match(uow, state, match, AgentMatchStatus.DECLINED, reason)
            return EventOutcome.APPLIED

        return self.run_locked(request_id, work, correlation_id=correlation_id)

    # =========================================================================
    # TIMERS
    # =========================================================================

    def handle_timeout(self, request_id: str, match_id: str) -> EventOutcome:
        """Expiry callback: a synthetic decline with reason "timeout".

        Discarded when the match is no longer PENDING or its deadline was
        extended past now.
        """

        def work(uow: UnitOfWork) -> EventOutcome:
            db = uow.session
            match = db.get(AgentMatch, match_id)
            if match is None:
                logger.warning(f"Timer fired for unknown match {match_id}", extra={"match_id": match_id})
                return EventOutcome.NOT_FOUND
            if match.status != AgentMatchStatus.PENDING.value or match.expires_at > uow.now:
                logger.debug(
                    f"Stale timer discarded for match {match_id}",
                    extra={"request_id": request_id, "match_id": match_id}
                )
                return EventOutcome.IGNORED

            state = db.get(MatchingState, match.request_id)
            if state is None or state.is_terminal:
                return EventOutcome.IGNORED

            self.close_match(uow, state, match, AgentMatchStatus.EXPIRED, "timeout")
            return EventOutcome.APPLIED

        return self.run_locked(request_id, work)

    def expire_overdue(self, now: Optional[datetime] = None, limit: int = 500) -> int:
        """Expire PENDING matches whose deadline passed (crash-safety sweep).

        Returns:
            Number of matches expired
        """
        now = now or self.clock()
        session = self.session_factory()
        try:
            stmt = (
                select(AgentMatch.request_id, AgentMatch.match_id)
                .where(AgentMatch.status == AgentMatchStatus.PENDING.value)
                .where(AgentMatch.expires_at <= now)
                .order_by(AgentMatch.expires_at, AgentMatch.match_id)
                .limit(limit)
            )
            overdue = list(session.execute(stmt))
        finally:
            session.close()

        expired = 0
        for request_id, match_id in overdue:
            if self.handle_timeout(request_id, match_id) == EventOutcome.APPLIED:
                expired += 1
        if expired:
            logger.info(f"Expired-match sweep expired {expired} matches")
        return expired

    # =========================================================================
    # STATE MACHINE STEPS (caller holds the lock and the unit of work)
    # =========================================================================

    def transition(
        self,
        uow: UnitOfWork,
        state: MatchingState,
        new_status: MatchingStatus,
        reason: Optional[str] = None,
    ) -> None:
        """Validate and apply a status change, with audit and status_changed event.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        previous = MatchingStatus(state.status)
        validate_transition(previous, new_status)
        state.status = new_status.value
        state.updated_at = uow.now

        self.publisher.record_audit(
            uow.session, AuditAction.STATUS_CHANGED.value, state.request_id,
            actor_id=uow.actor_id,
            details={"previous_status": previous.value, "new_status": new_status.value, "reason": reason},
            correlation_id=uow.correlation_id,
        )
        self.publisher.enqueue(
            uow.session,
            EventType.STATUS_CHANGED,
            StatusChangedPayload(
                request_id=state.request_id,
                previous_status=previous.value,
                new_status=new_status.value,
                reason=reason,
            ),
            request_id=state.request_id,
            correlation_id=uow.correlation_id,
            actor_id=uow.actor_id,
        )

    def set_match_status(self, uow: UnitOfWork, match: AgentMatch, new_status: AgentMatchStatus) -> None:
        validate_match_transition(AgentMatchStatus(match.status), new_status)
        match.status = new_status.value
        if new_status != AgentMatchStatus.SUPERSEDED:
            match.responded_at = uow.now
        uow.cancel.append(match.match_id)

    def pending_matches(self, session: Session, request_id: str) -> List[AgentMatch]:
        session.flush()
        stmt = (
            select(AgentMatch)
            .where(AgentMatch.request_id == request_id)
            .where(AgentMatch.status == AgentMatchStatus.PENDING.value)
            .order_by(AgentMatch.created_at, AgentMatch.match_id)
        )
        return list(session.scalars(stmt))

    def count_pending(self, session: Session, request_id: str) -> int:
        session.flush()
        stmt = (
            select(func.count())
            .select_from(AgentMatch)
            .where(AgentMatch.request_id == request_id)
            .where(AgentMatch.status == AgentMatchStatus.PENDING.value)
        )
        return int(session.scalar(stmt) or 0)

    def supersede_pending(self, uow: UnitOfWork, state: MatchingState) -> List[AgentMatch]:
        """Mark every PENDING match SUPERSEDED and queue its timer cancellation."""
        superseded = self.pending_matches(uow.session, state.request_id)
        for match in superseded:
            self.set_match_status(uow, match, AgentMatchStatus.SUPERSEDED)
        uow.session.flush()
        return superseded

    def close_match(
        self,
        uow: UnitOfWork,
        state: MatchingState,
        match: AgentMatch,
        new_status: AgentMatchStatus,
        reason: str,
    ) -> None:
        """Decline/expire/remove a PENDING match and act on the coordinator's decision."""
        db = uow.session
        self.set_match_status(uow, match, new_status)
        decline = AgentDecline(
            match_id=match.match_id,
            agent_id=match.agent_id,
            request_id=match.request_id,
            reason=reason,
            declined_at=uow.now,
        )
        db.add(decline)
        db.flush()

        remaining = self.count_pending(db, state.request_id)
        decision = decide_next_action(
            request_id=state.request_id,
            declined_agent_id=match.agent_id,
            reason=reason,
            remaining_matches=remaining,
            adjusted_min_agents=state.adjusted_min_agents,
            attempt=state.attempt,
            max_attempts=self.config.max_attempts,
        )

        action = AuditAction.AGENT_TIMEOUT if new_status == AgentMatchStatus.EXPIRED else AuditAction.AGENT_DECLINED
        self.publisher.record_audit(
            db, action.value, state.request_id,
            agent_id=match.agent_id, match_id=match.match_id, actor_id=uow.actor_id,
            details={"reason": reason, "remaining_matches": remaining, "decision": decision.action.value},
            correlation_id=uow.correlation_id,
        )
        self.publisher.enqueue(
            db,
            EventType.AGENT_DECLINED,
            AgentDeclinedPayload(
                request_id=state.request_id,
                decline=DeclineSummary(
                    match_id=match.match_id,
                    agent_id=match.agent_id,
                    request_id=match.request_id,
                    reason=reason,
                    declined_at=uow.now,
                ),
                remaining_matches=remaining,
                requires_rematch=decision.action != RematchAction.NO_OP,
            ),
            request_id=state.request_id,
            correlation_id=uow.correlation_id,
            actor_id=uow.actor_id,
        )

        if new_status == AgentMatchStatus.EXPIRED:
            response = "expired"
        elif reason == "admin_removed":
            response = "removed"
        else:
            response = "declined"
        metrics.agent_responses_total.labels(response=response).inc()
        metrics.declines_total.labels(reason=reason).inc()
        if new_status == AgentMatchStatus.EXPIRED:
            uow.broadcasts.append((BroadcastType.MATCH_EXPIRED, {
                "requestId": state.request_id,
                "agentId": match.agent_id,
                "matchId": match.match_id,
            }))

        logger.info(
            f"Match {match.match_id} closed as {new_status.value}, {remaining} remaining, decision {decision.action.value}",
            extra={
                "request_id": state.request_id,
                "agent_id": match.agent_id,
                "match_id": match.match_id,
                "attempt": state.attempt,
            }
        )

        if decision.action == RematchAction.REMATCH:
            self.rematch(uow, state, decision.next_attempt)
        elif decision.action == RematchAction.FAIL:
            self.fail(uow, state, decision.reason)

    def rematch(self, uow: UnitOfWork, state: MatchingState, next_attempt: int) -> None:
        """Close the current round and run a new one excluding every historical agent."""
        db = uow.session
        self.supersede_pending(uow, state)

        round_ids = list(db.scalars(
            select(AgentMatch.match_id)
            .where(AgentMatch.request_id == state.request_id)
            .order_by(AgentMatch.created_at, AgentMatch.match_id)
        ))
        known = list(state.previous_match_ids or [])
        state.previous_match_ids = known + [m for m in round_ids if m not in known]

        self.transition(uow, state, MatchingStatus.REMATCHING, reason=REMATCH_REASON)
        state.attempt = next_attempt

        self.publisher.record_audit(
            db, AuditAction.REMATCH_STARTED.value, state.request_id,
            actor_id=uow.actor_id,
            details={"attempt": next_attempt, "previous_match_ids": state.previous_match_ids},
            correlation_id=uow.correlation_id,
        )
        self.publisher.enqueue(
            db,
            EventType.REMATCH_INITIATED,
            RematchInitiatedPayload(
                request_id=state.request_id,
                attempt=next_attempt,
                previous_match_ids=state.previous_match_ids,
                reason=REMATCH_REASON,
            ),
            request_id=state.request_id,
            correlation_id=uow.correlation_id,
            actor_id=uow.actor_id,
        )
        metrics.rematches_total.labels(attempt=str(next_attempt)).inc()
        logger.info(
            f"Rematch initiated for request {state.request_id}",
            extra={"request_id": state.request_id, "attempt": next_attempt}
        )

        request = MatchingRequest.from_snapshot(state.request_snapshot)
        self.run_selection_round(uow, state, request)

    def fail(self, uow: UnitOfWork, state: MatchingState, reason: str) -> None:
        """Move to FAILED and publish matching.failed. Never raises for exhaustion."""
        db = uow.session
        self.supersede_pending(uow, state)
        state.failure_reason = reason

        self.publisher.record_audit(
            db, AuditAction.MATCHING_FAILED.value, state.request_id,
            actor_id=uow.actor_id,
            details={
                "reason": reason,
                "attempts_made": state.attempt,
                "total_agents_evaluated": state.total_agents_evaluated,
            },
            correlation_id=uow.correlation_id,
        )
        self.transition(uow, state, MatchingStatus.FAILED, reason=reason)
        self.publisher.enqueue(
            db,
            EventType.MATCHING_FAILED,
            MatchingFailedPayload(
                request_id=state.request_id,
                reason=reason,
                attempts_made=state.attempt,
                total_agents_evaluated=state.total_agents_evaluated,
                is_peak_season=state.is_peak_season,
            ),
            request_id=state.request_id,
            correlation_id=uow.correlation_id,
            actor_id=uow.actor_id,
        )
        metrics.failures_total.labels(reason=reason).inc()
        uow.broadcasts.append((BroadcastType.REQUEST_UPDATE, {
            "requestId": state.request_id,
            "status": MatchingStatus.FAILED.value,
            "reason": reason,
        }))
        logger.warning(
            f"Matching failed for request {state.request_id}: {reason}",
            extra={"request_id": state.request_id, "attempt": state.attempt}
        )

    def refresh_peak_season(self, uow: UnitOfWork, state: MatchingState, request: MatchingRequest) -> PeakSeasonInfo:
        """Recompute peak-season thresholds as of ``uow.now`` and store them on the state.

        PEAK_SEASON_ACTIVATED is recorded when a window opens for a request
        that was off-peak.
        """
        peak = self.peak_policy.detect_peak_season(
            request.start_date,
            request.end_date,
            request.destinations,
            self.config.min_agents,
            self.config.timeout_hours,
            now=uow.now,
        )
        activated = peak.is_peak_season and not state.is_peak_season
        state.is_peak_season = peak.is_peak_season
        state.adjusted_min_agents = peak.adjusted_min_agents
        state.adjusted_timeout_hours = peak.adjusted_timeout_hours

        if activated:
            self.publisher.record_audit(
                uow.session, AuditAction.PEAK_SEASON_ACTIVATED.value, state.request_id,
                details={
                    "active_periods": peak.active_periods,
                    "adjusted_min_agents": peak.adjusted_min_agents,
                    "adjusted_timeout_hours": peak.adjusted_timeout_hours,
                    "attempt": state.attempt,
                },
                correlation_id=uow.correlation_id,
            )
        return peak

    def run_selection_round(self, uow: UnitOfWork, state: MatchingState, request: MatchingRequest) -> None:
        """Fetch, score and select agents for the current attempt.

        Raises:
            CandidateRepositoryError: When the directory stays unavailable after retries
        """
        db = uow.session
        started = time.monotonic()
        self.refresh_peak_season(uow, state, request)

        excluded = set(db.scalars(
            select(AgentMatch.agent_id).where(AgentMatch.request_id == state.request_id)
        ))
        candidates = call_with_retry(
            lambda: self.candidates.fetch_candidates(request, excluded),
            retry_on=(CandidateRepositoryError,),
            max_retries=self.config.candidate_fetch_retries,
            retry_delay_base=self.config.retry_delay_base,
            sleep=self.sleep,
            operation="fetch_candidates",
        )
        # Guard against adapters that ignore the exclusion list
        candidates = [c for c in candidates if c.agent_id not in excluded]

        ranked = self.scorer.rank(request, candidates)
        state.total_agents_evaluated = (state.total_agents_evaluated or 0) + len(ranked)
        selection = select_agents(ranked, state.adjusted_min_agents, bench_fallback=self.config.bench_fallback)
        duration_ms = (time.monotonic() - started) * 1000
        metrics.selection_duration_seconds.observe(duration_ms / 1000)
        peak_label = str(state.is_peak_season).lower()

        if not selection.selected:
            reason = FAIL_REASON_NO_CANDIDATES if not ranked else FAIL_REASON_NO_STAR
            metrics.matching_rounds_total.labels(outcome=reason, peak_season=peak_label).inc()
            self.fail(uow, state, reason)
            return

        if selection.used_bench_fallback:
            self.publisher.record_audit(
                db, AuditAction.TIER_FALLBACK_USED.value, state.request_id,
                details={"attempt": state.attempt, "pool_size": selection.pool_size},
                correlation_id=uow.correlation_id,
            )

        expires_at = uow.now + timedelta(hours=state.adjusted_timeout_hours)
        matches: List[AgentMatch] = []
        for picked in selection.selected:
            match = AgentMatch(
                match_id=str(uuid.uuid4()),
                request_id=state.request_id,
                agent_id=picked.agent_id,
                tier=picked.tier.value,
                match_score=picked.scored.score,
                match_reasons=list(picked.scored.reasons),
                status=AgentMatchStatus.PENDING.value,
                attempt=state.attempt,
                expires_at=expires_at,
                created_at=uow.now,
            )
            db.add(match)
            matches.append(match)
            metrics.matches_created_total.labels(tier=picked.tier.value).inc()
        db.flush()

        for match in matches:
            self.publisher.record_audit(
                db, AuditAction.AGENT_SELECTED.value, state.request_id,
                agent_id=match.agent_id, match_id=match.match_id,
                details={"tier": match.tier, "match_score": match.match_score, "attempt": match.attempt},
                correlation_id=uow.correlation_id,
            )
        self.publisher.record_audit(
            db, AuditAction.MATCHING_COMPLETED.value, state.request_id,
            details={
                "attempt": state.attempt,
                "agent_ids": [m.agent_id for m in matches],
                "pool_size": selection.pool_size,
            },
            correlation_id=uow.correlation_id,
        )

        self.transition(uow, state, MatchingStatus.AGENTS_MATCHED, reason=f"attempt_{state.attempt}_matched")
        self.publisher.enqueue(
            db,
            EventType.AGENTS_MATCHED,
            AgentsMatchedPayload(
                request_id=state.request_id,
                matches=[MatchSummary(
                    match_id=m.match_id,
                    agent_id=m.agent_id,
                    tier=m.tier,
                    match_score=m.match_score,
                    match_reasons=list(m.match_reasons),
                    status=m.status,
                    attempt=m.attempt,
                    expires_at=m.expires_at,
                ) for m in matches],
                star_agents_count=selection.star_count,
                bench_agents_count=selection.bench_count,
                total_candidates_evaluated=selection.pool_size,
                matching_duration_ms=round(duration_ms, 2),
                is_peak_season=state.is_peak_season,
                attempt=state.attempt,
                expires_at=expires_at,
            ),
            request_id=state.request_id,
            correlation_id=uow.correlation_id,
        )

        for match in matches:
            uow.arm.append((match.match_id, match.expires_at))
            uow.broadcasts.append((BroadcastType.NEW_MATCH, {
                "requestId": state.request_id,
                "agentId": match.agent_id,
                "matchId": match.match_id,
                "tier": match.tier,
                "expiresAt": match.expires_at.isoformat(),
            }))

        metrics.matching_rounds_total.labels(outcome="matched", peak_season=peak_label).inc()
        logger.info(
            f"Selected {len(matches)} agents ({selection.star_count} star, {selection.bench_count} bench)",
            extra={"request_id": state.request_id, "attempt": state.attempt}
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_snapshot(self, request_id: str) -> Optional[MatchingStateSnapshot]:
        session = self.session_factory()
        try:
            state = session.get(MatchingState, request_id)
            if state is None:
                return None
            return self.build_snapshot(session, state)
        finally:
            session.close()

    def build_snapshot(self, session: Session, state: MatchingState) -> MatchingStateSnapshot:
        matches = list(session.scalars(
            select(AgentMatch)
            .where(AgentMatch.request_id == state.request_id)
            .order_by(AgentMatch.attempt, AgentMatch.created_at, AgentMatch.match_id)
        ))
        return MatchingStateSnapshot(
            request_id=state.request_id,
            status=state.status,
            attempt=state.attempt,
            max_attempts=self.config.max_attempts,
            previous_match_ids=list(state.previous_match_ids or []),
            failure_reason=state.failure_reason,
            is_peak_season=state.is_peak_season,
            adjusted_min_agents=state.adjusted_min_agents,
            adjusted_timeout_hours=state.adjusted_timeout_hours,
            total_agents_evaluated=state.total_agents_evaluated,
            pending_matches=sum(1 for m in matches if m.status == AgentMatchStatus.PENDING.value),
            matches=[AgentMatchView.model_validate(m) for m in matches],
            created_at=state.created_at,
            updated_at=state.updated_at,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _mark_processed(self, uow: UnitOfWork, key: str, event_type: str, event_id: Optional[str]) -> None:
        uow.session.add(ProcessedEvent(
            dedup_key=key,
            event_type=event_type,
            request_id=uow.request_id,
            event_id=event_id,
            processed_at=uow.now,
        ))

    def _record_anomaly(
        self,
        uow: UnitOfWork,
        state: MatchingState,
        kind: str,
        agent_id: Optional[str] = None,
        match_id: Optional[str] = None,
    ) -> None:
        metrics.anomalies_total.labels(kind=kind).inc()
        self.publisher.record_audit(
            uow.session, AuditAction.ANOMALY.value, state.request_id,
            agent_id=agent_id, match_id=match_id, actor_id=uow.actor_id,
            details={"kind": kind, "status": state.status},
            correlation_id=uow.correlation_id,
        )
        logger.warning(
            f"Ignored event: {kind}",
            extra={"request_id": state.request_id, "agent_id": agent_id, "match_id": match_id}
        )

    def find_match(
        self,
        session: Session,
        request_id: str,
        agent_id: str,
        match_id: Optional[str] = None,
    ) -> Optional[AgentMatch]:
        """The referenced match, or the agent's most recent match for the request."""
        if match_id:
            match = session.get(AgentMatch, match_id)
            if match is None or match.request_id != request_id or match.agent_id != agent_id:
                return None
            return match
        stmt = (
            select(AgentMatch)
            .where(AgentMatch.request_id == request_id)
            .where(AgentMatch.agent_id == agent_id)
            .order_by(AgentMatch.attempt.desc(), AgentMatch.created_at.desc())
            .limit(1)
        )
        return session.scalars(stmt).first()

    def _load_response_target(
        self,
        uow: UnitOfWork,
        event_type: str,
        request_id: str,
        agent_id: str,
        match_id: Optional[str],
    ) -> Tuple[Optional[MatchingState], Optional[AgentMatch], Optional[EventOutcome]]:
        """Resolve state and match for an agent response and apply dedup/anomaly rules.

        Returns (state, match, None) when the response should be applied,
        otherwise an outcome to return unchanged.
        """
        db = uow.session
        state = db.get(MatchingState, request_id)
        if state is None:
            logger.warning(f"{event_type} for unknown request", extra={"request_id": request_id, "agent_id": agent_id})
            return None, None, EventOutcome.NOT_FOUND

        match = self.find_match(db, request_id, agent_id, match_id)
        if match is None:
            logger.warning(
                f"{event_type} for unknown match",
                extra={"request_id": request_id, "agent_id": agent_id, "match_id": match_id}
            )
            return state, None, EventOutcome.NOT_FOUND

        key = dedup_key(event_type, request_id, agent_id, match.attempt)
        if db.get(ProcessedEvent, key) is not None:
            logger.info(f"Duplicate {event_type} ignored", extra={"request_id": request_id, "agent_id": agent_id})
            return state, match, EventOutcome.DUPLICATE
        self._mark_processed(uow, key, event_type, None)

        if state.is_terminal:
            self._record_anomaly(uow, state, f"{event_type}_after_{state.status.lower()}", agent_id, match.match_id)
            return state, match, EventOutcome.IGNORED
        if match.status != AgentMatchStatus.PENDING.value:
            self._record_anomaly(uow, state, f"{event_type}_on_{match.status.lower()}_match", agent_id, match.match_id)
            return state, match, EventOutcome.IGNORED

        return state, match, None
