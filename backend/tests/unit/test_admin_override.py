"""Unit tests for admin overrides"""

from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from audit.service import list_audit_events
from matching.exceptions import AdminOverrideError
from matching.schemas import AdminOverrideRequest
from models.agent_decline import AgentDecline

from fixtures.agents import audit_actions, make_request

REQUEST_ID = "req-goa-1"
REASON = "Customer asked for this agent by name"


def override(action: str, **kwargs) -> AdminOverrideRequest:
    return AdminOverrideRequest(action=action, admin_user_id="admin-7", reason=REASON, **kwargs)


def statuses(snapshot):
    return {m.agent_id: m.status for m in snapshot.matches}


class TestForceMatch:
    """force_match accepts the agent and closes the request"""

    def test_force_pending_agent(self, orchestrator, admin_handler, bus, scheduler, session_factory):
        orchestrator.start_matching(make_request())

        snapshot = admin_handler.apply(REQUEST_ID, override("force_match", agent_id="bench-2"))

        assert snapshot.status == "MATCHED"
        assert statuses(snapshot) == {"star-1": "SUPERSEDED", "bench-1": "SUPERSEDED", "bench-2": "ACCEPTED"}
        assert scheduler.pending_count() == 0

        [applied] = bus.messages("admin.override.applied")
        assert applied["payload"]["admin_user_id"] == "admin-7"
        assert applied["payload"]["action"] == "force_match"
        assert applied["payload"]["affected_agent_ids"] == ["bench-2"]
        assert applied["metadata"]["actor_id"] == "admin-7"

        session = session_factory()
        entries = list_audit_events(session, REQUEST_ID)
        session.close()
        admin_entry = entries[-1]
        assert admin_entry.action == "ADMIN_OVERRIDE"
        assert admin_entry.actor_id == "admin-7"
        assert admin_entry.details["reason"] == REASON
        status_entries = [e for e in entries if e.action == "STATUS_CHANGED"]
        assert status_entries[-1].actor_id == "admin-7"

    def test_force_agent_outside_current_round(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())

        snapshot = admin_handler.apply(REQUEST_ID, override("force_match", agent_id="outside-7"))

        forced = [m for m in snapshot.matches if m.agent_id == "outside-7"]
        assert len(forced) == 1
        assert forced[0].status == "ACCEPTED"
        assert forced[0].tier == "BENCH"
        assert forced[0].match_score == 0.0
        assert forced[0].match_reasons == ["Admin override"]
        assert snapshot.status == "MATCHED"

    def test_force_superseded_agent_gets_new_match(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())
        orchestrator.decline(REQUEST_ID, "bench-1")

        snapshot = admin_handler.apply(REQUEST_ID, override("force_match", agent_id="star-1"))

        star_matches = sorted((m.attempt, m.status) for m in snapshot.matches if m.agent_id == "star-1")
        assert star_matches == [(0, "SUPERSEDED"), (1, "ACCEPTED")]

    def test_forced_agent_workload_incremented(self, orchestrator, admin_handler, directory):
        orchestrator.start_matching(make_request())

        admin_handler.apply(REQUEST_ID, override("force_match", agent_id="bench-1"))

        assert directory.get("bench-1").current_workload == 1
        assert directory.get("star-1").current_workload == 0

    def test_expired_agent_cannot_be_forced(self, orchestrator, admin_handler, scheduler, clock):
        orchestrator.start_matching(make_request())
        clock.advance(hours=24)
        scheduler.fire_due()

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(REQUEST_ID, override("force_match", agent_id="star-1"))

        assert exc_info.value.code == "agent_excluded"

    def test_declined_agent_cannot_be_forced(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())
        orchestrator.decline(REQUEST_ID, "bench-1")

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(REQUEST_ID, override("force_match", agent_id="bench-1"))

        assert exc_info.value.code == "agent_excluded"
        assert orchestrator.get_snapshot(REQUEST_ID).status == "AGENTS_MATCHED"


class TestRemoveAgent:

    def test_remove_triggers_rematch(self, orchestrator, admin_handler, bus, session_factory):
        orchestrator.start_matching(make_request())

        snapshot = admin_handler.apply(REQUEST_ID, override("remove_agent", agent_id="bench-1"))

        assert snapshot.attempt == 1
        assert statuses(snapshot)["bench-1"] == "SUPERSEDED"
        [declined] = bus.messages("agent.declined")
        assert declined["payload"]["decline"]["reason"] == "admin_removed"
        assert declined["payload"]["requires_rematch"] is True

        session = session_factory()
        [record] = session.scalars(select(AgentDecline)).all()
        session.close()
        assert record.reason == "admin_removed"

    def test_removed_agent_not_reselected(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())

        snapshot = admin_handler.apply(REQUEST_ID, override("remove_agent", agent_id="star-1"))

        assert [m.agent_id for m in snapshot.matches].count("star-1") == 1

    def test_remove_agent_without_pending_match(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(REQUEST_ID, override("remove_agent", agent_id="bench-7"))
        assert exc_info.value.code == "match_not_found"


class TestExtendDeadline:

    def test_extend_moves_deadlines_and_timers(self, orchestrator, admin_handler, scheduler, clock):
        orchestrator.start_matching(make_request())
        original = clock.now + timedelta(hours=24)

        snapshot = admin_handler.apply(REQUEST_ID, override("extend_deadline", extend_hours=12))

        assert {m.expires_at for m in snapshot.matches} == {original + timedelta(hours=12)}
        assert scheduler.fire_due(original) == []
        assert len(scheduler.fire_due(original + timedelta(hours=12))) == 3

    def test_extend_on_matched_request(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())
        orchestrator.accept(REQUEST_ID, "star-1")

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(REQUEST_ID, override("extend_deadline", extend_hours=12))
        assert exc_info.value.code == "terminal_state"


class TestOverrideValidation:

    def test_reason_too_short(self, orchestrator, admin_handler, session_factory):
        orchestrator.start_matching(make_request())
        before = audit_actions(session_factory, REQUEST_ID)

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(
                REQUEST_ID,
                AdminOverrideRequest(action="force_match", admin_user_id="admin-7", reason="because", agent_id="bench-1"),
            )

        assert exc_info.value.code == "reason_too_short"
        assert audit_actions(session_factory, REQUEST_ID) == before

    def test_unknown_request(self, admin_handler):
        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply("missing", override("extend_deadline", extend_hours=2))
        assert exc_info.value.code == "not_found"

    def test_terminal_request(self, orchestrator, admin_handler):
        orchestrator.start_matching(make_request())
        orchestrator.cancel_request(REQUEST_ID)

        with pytest.raises(AdminOverrideError) as exc_info:
            admin_handler.apply(REQUEST_ID, override("force_match", agent_id="star-1"))
        assert exc_info.value.code == "terminal_state"

    def test_agent_id_required(self):
        with pytest.raises(ValidationError):
            AdminOverrideRequest(action="remove_agent", admin_user_id="admin-7", reason=REASON)

    def test_extend_hours_required_and_bounded(self):
        with pytest.raises(ValidationError):
            AdminOverrideRequest(action="extend_deadline", admin_user_id="admin-7", reason=REASON)
        with pytest.raises(ValidationError):
            AdminOverrideRequest(action="extend_deadline", admin_user_id="admin-7", reason=REASON, extend_hours=500)
