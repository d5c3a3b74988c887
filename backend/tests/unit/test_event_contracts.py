"""Unit tests for inbound parsing and outbound envelopes"""

import json

import pytest

from events.contracts import (
    EVENT_SOURCE,
    EVENT_VERSION,
    AgentDeclinedInbound,
    EventType,
    RequestCreated,
    StatusChangedPayload,
    build_envelope,
    parse_inbound_event,
)
from matching.exceptions import InboundEventValidationError

from fixtures.agents import make_request, request_created_event


class TestParseInboundEvent:
    """Test tagged-union validation of inbound events"""

    def test_request_created(self):
        raw = json.dumps(request_created_event(make_request()))

        event = parse_inbound_event(raw)

        assert isinstance(event, RequestCreated)
        assert event.event_id == "evt-created-1"
        assert event.payload.destinations == ["Goa, India"]
        assert event.payload.start_date.isoformat() == "2026-05-20"

    def test_bytes_accepted(self):
        raw = json.dumps(request_created_event(make_request())).encode("utf-8")
        assert isinstance(parse_inbound_event(raw), RequestCreated)

    def test_decline_reason_normalized(self):
        event = parse_inbound_event({
            "event_type": "agent.declined",
            "payload": {"request_id": "r1", "agent_id": "a1", "reason": "  Workload "},
        })
        unknown = parse_inbound_event({
            "event_type": "agent.declined",
            "payload": {"request_id": "r1", "agent_id": "a1", "reason": "too far"},
        })

        assert isinstance(event, AgentDeclinedInbound)
        assert event.payload.reason == "workload"
        assert unknown.payload.reason == "declined"

    def test_event_id_generated_when_missing(self):
        event = parse_inbound_event({
            "event_type": "agent.confirmed",
            "payload": {"request_id": "r1", "agent_id": "a1"},
        })
        assert event.event_id

    def test_invalid_json(self):
        with pytest.raises(InboundEventValidationError, match="not valid JSON"):
            parse_inbound_event("{nope")

    def test_unknown_event_type(self):
        with pytest.raises(InboundEventValidationError) as exc_info:
            parse_inbound_event({"event_type": "request.archived", "payload": {}})
        assert exc_info.value.errors

    def test_end_date_before_start_date(self):
        event = request_created_event(make_request())
        event["payload"]["end_date"] = "2026-05-01"

        with pytest.raises(InboundEventValidationError):
            parse_inbound_event(event)

    def test_blank_destinations_rejected(self):
        event = request_created_event(make_request())
        event["payload"]["destinations"] = ["  "]

        with pytest.raises(InboundEventValidationError):
            parse_inbound_event(event)


class TestBuildEnvelope:

    def test_envelope_fields(self):
        envelope = build_envelope(
            EventType.STATUS_CHANGED,
            StatusChangedPayload(request_id="r1", previous_status="MATCHING", new_status="AGENTS_MATCHED"),
            correlation_id="corr-1",
            actor_id="admin-1",
        )
        data = envelope.model_dump(mode="json")

        assert data["event_type"] == "matching.status_changed"
        assert data["version"] == EVENT_VERSION
        assert data["source"] == EVENT_SOURCE
        assert data["correlation_id"] == "corr-1"
        assert data["metadata"] == {"trace_id": "corr-1", "actor_id": "admin-1"}
        assert data["payload"]["new_status"] == "AGENTS_MATCHED"
        assert data["event_id"]

    def test_event_ids_are_unique(self):
        payload = StatusChangedPayload(request_id="r1", previous_status="A", new_status="B")
        first = build_envelope(EventType.STATUS_CHANGED, payload, correlation_id="c")
        second = build_envelope(EventType.STATUS_CHANGED, payload, correlation_id="c")
        assert first.event_id != second.event_id
