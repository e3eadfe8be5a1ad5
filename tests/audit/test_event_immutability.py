"""
Tests for the write-once event log and the append-only decision trail.

Verifies at the ORM level:
- Event payload and identifying columns cannot be rewritten
- Events cannot be deleted
- Status may still move through the lifecycle
- Ticket decisions can be neither updated nor deleted
"""

import pytest
from sqlalchemy import select

from shepherd_kernel.domain.types import EventStatus
from shepherd_kernel.exceptions import ImmutabilityViolationError
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.ticket import TicketDecisionModel
from shepherd_kernel.services.event_log import EventLog, operation_for_event_type
from shepherd_kernel.domain.types import EventType, Operation


@pytest.fixture
def pending_event(enqueuer, make_request):
    return enqueuer.submit(make_request(), requires_approval=True)


class TestEventPayloadImmutable:

    def test_payload_rewrite_rejected(self, session, pending_event):
        event = session.get(EventModel, pending_event.event_id)
        event.payload = b'{"cpu":64}'

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "Event"
        assert "payload" in exc_info.value.reason

    @pytest.mark.parametrize(
        "column, value",
        [
            ("aggregate_id", "someone-else"),
            ("event_type", "VM_DELETION_REQUESTED"),
            ("created_by", "mallory"),
        ],
    )
    def test_identity_columns_rejected(self, session, pending_event, column, value):
        event = session.get(EventModel, pending_event.event_id)
        setattr(event, column, value)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_rejected(self, session, pending_event):
        event = session.get(EventModel, pending_event.event_id)
        session.delete(event)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_status_change_allowed(self, session, pending_event, deterministic_clock):
        events = EventLog(session, deterministic_clock)
        event = events.get(pending_event.event_id)
        events.transition(event, EventStatus.PROCESSING)
        session.commit()
        assert session.get(EventModel, pending_event.event_id).status == "processing"


class TestDecisionsAppendOnly:

    def test_decision_update_rejected(self, session, enqueuer, pending_event):
        enqueuer.reject(pending_event.ticket_id, "bob", "no")
        decision = session.execute(select(TicketDecisionModel)).scalar_one()
        decision.reason = "actually yes"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_decision_delete_rejected(self, session, enqueuer, pending_event):
        enqueuer.cancel(pending_event.ticket_id, "alice", "dup")
        decision = session.execute(select(TicketDecisionModel)).scalar_one()
        session.delete(decision)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestOperationForEventType:

    def test_request_types_map_back(self):
        assert operation_for_event_type(EventType.VM_MODIFY_REQUESTED) == Operation.MODIFY_VM

    def test_outcome_type_is_not_a_request(self):
        with pytest.raises(ValueError):
            operation_for_event_type(EventType.VM_MODIFY_COMPLETED)
