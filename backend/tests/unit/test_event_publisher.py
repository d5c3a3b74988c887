"""Unit tests for the transactional outbox publisher"""

from unittest.mock import Mock, call

from sqlalchemy import select

from events.contracts import BroadcastType, EventType, StatusChangedPayload
from events.publisher import EventPublisher
from models.audit_log import MatchingAuditLog
from models.outbox_event import OutboxEvent, OutboxStatus

from fixtures.buses import FlakyEventBus


def status_payload(new_status: str) -> StatusChangedPayload:
    return StatusChangedPayload(request_id="req-1", previous_status="MATCHING", new_status=new_status)


def outbox_rows(session_factory):
    session = session_factory()
    try:
        return list(session.scalars(select(OutboxEvent).order_by(OutboxEvent.id)))
    finally:
        session.close()


class TestOutboxRelay:
    """Test enqueue + relay_pending"""

    def _enqueue(self, publisher, session_factory, *statuses, request_id="req-1"):
        session = session_factory()
        for status in statuses:
            publisher.enqueue(session, EventType.STATUS_CHANGED, status_payload(status), request_id=request_id)
        session.commit()
        session.close()

    def test_relay_publishes_in_order_and_marks_rows(self, session_factory):
        bus = FlakyEventBus()
        publisher = EventPublisher(bus, sleep=Mock())
        self._enqueue(publisher, session_factory, "AGENTS_MATCHED", "MATCHED")

        session = session_factory()
        published = publisher.relay_pending(session, request_id="req-1")
        session.close()

        assert published == 2
        assert [m["payload"]["new_status"] for m in bus.messages("matching.status_changed")] == [
            "AGENTS_MATCHED", "MATCHED",
        ]
        rows = outbox_rows(session_factory)
        assert all(r.status == OutboxStatus.PUBLISHED.value for r in rows)
        assert all(r.published_at is not None for r in rows)

    def test_failed_publish_stays_pending_and_blocks_later_rows(self, session_factory):
        bus = FlakyEventBus(failures=3)
        sleep = Mock()
        publisher = EventPublisher(bus, max_retries=2, retry_delay_base=0.5, sleep=sleep)
        self._enqueue(publisher, session_factory, "AGENTS_MATCHED", "MATCHED")

        session = session_factory()
        published = publisher.relay_pending(session)
        session.close()

        assert published == 0
        assert bus.attempts == 3
        assert sleep.call_args_list == [call(0.5), call(1.0)]
        rows = outbox_rows(session_factory)
        assert [r.status for r in rows] == [OutboxStatus.PENDING.value, OutboxStatus.PENDING.value]
        assert rows[0].attempts == 1
        assert "bus unavailable" in rows[0].last_error

        session = session_factory()
        assert publisher.relay_pending(session) == 2
        session.close()

    def test_retry_within_one_pass(self, session_factory):
        bus = FlakyEventBus(failures=1)
        publisher = EventPublisher(bus, max_retries=2, sleep=Mock())
        self._enqueue(publisher, session_factory, "AGENTS_MATCHED")

        session = session_factory()
        assert publisher.relay_pending(session) == 1
        session.close()

    def test_relay_scoped_to_request(self, session_factory):
        bus = FlakyEventBus()
        publisher = EventPublisher(bus, sleep=Mock())
        self._enqueue(publisher, session_factory, "AGENTS_MATCHED", request_id="req-1")
        self._enqueue(publisher, session_factory, "AGENTS_MATCHED", request_id="req-2")

        session = session_factory()
        assert publisher.relay_pending(session, request_id="req-2") == 1
        session.close()

        statuses = {r.request_id: r.status for r in outbox_rows(session_factory)}
        assert statuses == {"req-1": OutboxStatus.PENDING.value, "req-2": OutboxStatus.PUBLISHED.value}


class TestRecordAudit:

    def test_audit_row_and_audit_event(self, session_factory):
        bus = FlakyEventBus()
        publisher = EventPublisher(bus, sleep=Mock())

        session = session_factory()
        publisher.record_audit(
            session, "AGENT_DECLINED", "req-1",
            agent_id="bench-1", match_id="m-1", details={"reason": "workload"},
        )
        session.commit()
        publisher.relay_pending(session)
        entry = session.scalars(select(MatchingAuditLog)).one()
        session.close()

        assert entry.action == "AGENT_DECLINED"
        assert entry.details == {"reason": "workload"}
        [message] = bus.messages("matching.audit.log")
        assert message["payload"]["audit_id"] == entry.id
        assert message["payload"]["agent_id"] == "bench-1"


class TestBroadcast:
    """Best-effort broadcasts never raise"""

    def test_sends_through_broadcaster(self):
        broadcaster = Mock()
        publisher = EventPublisher(FlakyEventBus(), broadcaster=broadcaster)

        assert publisher.broadcast(BroadcastType.NEW_MATCH, {"requestId": "r1"}) is True
        broadcaster.send.assert_called_once_with("new_match", {"requestId": "r1"})

    def test_failure_is_swallowed(self):
        broadcaster = Mock()
        broadcaster.send.side_effect = RuntimeError("gateway down")
        publisher = EventPublisher(FlakyEventBus(), broadcaster=broadcaster)

        assert publisher.broadcast(BroadcastType.MATCH_EXPIRED, {"requestId": "r1"}) is False

    def test_disabled_without_broadcaster(self):
        publisher = EventPublisher(FlakyEventBus())
        assert publisher.broadcast(BroadcastType.REQUEST_UPDATE, {}) is False
