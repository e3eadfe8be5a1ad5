"""
Tests for TransactionalEnqueuer -- atomic request bookkeeping.

Covers:
- submit(): pending request (event + ticket, no job), auto-approved request
  (event + approved ticket + decision + job), temporary aggregate id
- approve_and_enqueue(): job inserted with the approval, override stored
  with its approver, invalid override rejected with nothing written
- No premature job: a job exists only for approved tickets
- A ticket leaves pending_approval at most once
- reject()/cancel(): terminal ticket, cancelled event, outcome event
- Atomicity: a failure inside the unit of work leaves no partial rows
"""

import json
from uuid import uuid4

import pytest
from sqlalchemy import event as sa_event, func, select

from shepherd_kernel.domain.spec import ModifiedSpec
from shepherd_kernel.domain.types import (
    DecisionType,
    EventStatus,
    EventType,
    JobState,
    Operation,
    TicketStatus,
)
from shepherd_kernel.exceptions import (
    InvalidModifiedSpecError,
    InvalidTicketStateError,
    TicketNotFoundError,
)
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.models.ticket import ApprovalTicketModel, TicketDecisionModel
from shepherd_kernel.selectors.status_selector import StatusSelector
from shepherd_kernel.services.enqueuer import AUTO_APPROVER, temporary_aggregate_id


def count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


class InjectedFailure(RuntimeError):
    pass


@pytest.fixture
def failing_job_insert():
    """Make every JobModel insert fail after the event and ticket were flushed."""

    def _fail(mapper, connection, target):
        raise InjectedFailure("job insert failed")

    sa_event.listen(JobModel, "before_insert", _fail)
    yield
    sa_event.remove(JobModel, "before_insert", _fail)


class TestSubmit:

    def test_pending_request_has_no_job(self, enqueuer, make_request, session):
        result = enqueuer.submit(make_request(), requires_approval=True)

        assert result.event_status == EventStatus.PENDING
        assert result.ticket_status == TicketStatus.PENDING_APPROVAL
        assert result.job_id is None

        selector = StatusSelector(session)
        assert selector.get_event(result.event_id).event_type == EventType.VM_CREATION_REQUESTED
        assert selector.find_job_for_event(result.event_id) is None
        assert count(session, JobModel) == 0

    def test_temporary_aggregate_id_for_create(self, enqueuer, make_request, session):
        result = enqueuer.submit(make_request(), requires_approval=True)
        event = StatusSelector(session).get_event(result.event_id)
        assert event.aggregate_id == temporary_aggregate_id("billing", result.event_id)
        assert event.aggregate_type == "VM"

    def test_auto_approved_request_commits_job(self, enqueuer, make_request, session):
        result = enqueuer.submit(
            make_request(priority=3), requires_approval=False, matched_rule="small-dev-vms",
        )

        assert result.event_status == EventStatus.PROCESSING
        assert result.ticket_status == TicketStatus.APPROVED
        assert result.job_id is not None

        selector = StatusSelector(session)
        ticket = selector.get_ticket(result.ticket_id)
        assert ticket.auto_approved
        assert ticket.matched_rule == "small-dev-vms"
        assert ticket.decided_by == AUTO_APPROVER
        assert [d.decision for d in ticket.decisions] == [DecisionType.AUTO_APPROVE]

        job = selector.get_job(result.job_id)
        assert job.state == JobState.AVAILABLE
        assert job.event_id == result.event_id
        assert job.priority == 3
        assert job.attempt == 0
        assert job.max_attempts == 3

    def test_payload_stored_verbatim(self, enqueuer, make_request, session):
        request = make_request()
        result = enqueuer.submit(request, requires_approval=True)
        assert StatusSelector(session).get_event(result.event_id).payload == request.payload

    def test_submit_logs_request(self, enqueuer, make_request, captured_logs):
        enqueuer.submit(make_request(), requires_approval=True)
        records = [r for r in captured_logs() if r["message"] == "request_submitted"]
        assert len(records) == 1
        assert records[0]["actor"] == "alice"
        assert records[0]["requires_approval"] is True


class TestApproveAndEnqueue:

    def test_approval_inserts_job(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(priority=2), requires_approval=True)

        approved = enqueuer.approve_and_enqueue(submitted.ticket_id, "bob", reason="ok")

        assert approved.event_status == EventStatus.PROCESSING
        assert approved.ticket_status == TicketStatus.APPROVED
        selector = StatusSelector(session)
        job = selector.get_job(approved.job_id)
        assert job.event_id == submitted.event_id
        assert job.priority == 2
        assert selector.get_event(submitted.event_id).status == EventStatus.PROCESSING

        ticket = selector.get_ticket(submitted.ticket_id)
        assert ticket.decided_by == "bob"
        assert ticket.decision_reason == "ok"
        assert ticket.modified_spec is None
        assert [d.decision for d in ticket.decisions] == [DecisionType.APPROVE]

    def test_override_recorded_with_approver(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)

        enqueuer.approve_and_enqueue(
            submitted.ticket_id, "bob", {"cpu": 4, "modified_reason": "right-size"},
        )

        ticket = StatusSelector(session).get_ticket(submitted.ticket_id)
        stored = json.loads(ticket.modified_spec)
        assert stored == {"cpu": 4, "modified_by": "bob", "modified_reason": "right-size"}

    def test_unknown_override_field_rejected(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)

        with pytest.raises(InvalidModifiedSpecError):
            enqueuer.approve_and_enqueue(submitted.ticket_id, "bob", {"gpu": 1})

        selector = StatusSelector(session)
        assert selector.get_ticket(submitted.ticket_id).status == TicketStatus.PENDING_APPROVAL
        assert count(session, JobModel) == 0

    def test_override_cannot_blank_required_fields(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)

        with pytest.raises(InvalidModifiedSpecError):
            enqueuer.approve_and_enqueue(submitted.ticket_id, "bob", {"namespace": ""})

        selector = StatusSelector(session)
        assert selector.get_ticket(submitted.ticket_id).status == TicketStatus.PENDING_APPROVAL
        assert count(session, JobModel) == 0

    def test_second_approval_rejected(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        enqueuer.approve_and_enqueue(submitted.ticket_id, "bob")

        with pytest.raises(InvalidTicketStateError) as exc_info:
            enqueuer.approve_and_enqueue(submitted.ticket_id, "carol")

        assert exc_info.value.current_status == "approved"
        assert count(session, JobModel) == 1

    def test_cannot_approve_auto_approved_ticket(self, enqueuer, make_request):
        submitted = enqueuer.submit(make_request(), requires_approval=False)
        with pytest.raises(InvalidTicketStateError):
            enqueuer.approve_and_enqueue(submitted.ticket_id, "bob")

    def test_unknown_ticket(self, enqueuer):
        with pytest.raises(TicketNotFoundError):
            enqueuer.approve_and_enqueue(uuid4(), "bob")

    def test_override_validated_before_any_write(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        with pytest.raises(InvalidModifiedSpecError):
            enqueuer.approve_and_enqueue(submitted.ticket_id, "bob", {"cpu": -2})
        assert count(session, TicketDecisionModel) == 0


class TestNoPrematureJob:

    def test_jobs_exist_only_for_approved_tickets(self, enqueuer, make_request, session):
        pending = [enqueuer.submit(make_request(), requires_approval=True) for _ in range(3)]
        enqueuer.submit(make_request(), requires_approval=False)
        enqueuer.approve_and_enqueue(pending[0].ticket_id, "bob")
        enqueuer.reject(pending[1].ticket_id, "bob", "no")

        rows = session.execute(
            select(ApprovalTicketModel.status, JobModel.id)
            .outerjoin(JobModel, JobModel.event_id == ApprovalTicketModel.event_id)
        ).all()
        for status, job_id in rows:
            assert (job_id is not None) == (status == TicketStatus.APPROVED.value)


class TestRejectAndCancel:

    def test_reject(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)

        ticket = enqueuer.reject(submitted.ticket_id, "bob", "too large")

        assert ticket.status == TicketStatus.REJECTED
        assert ticket.decision_reason == "too large"
        assert [d.decision for d in ticket.decisions] == [DecisionType.REJECT]
        selector = StatusSelector(session)
        assert selector.get_event(submitted.event_id).status == EventStatus.CANCELLED
        outcomes = selector.get_outcome_events(submitted.event_id)
        assert [o.event_type for o in outcomes] == [EventType.REQUEST_CANCELLED]
        assert outcomes[0].status == EventStatus.CANCELLED
        assert json.loads(outcomes[0].payload)["ticket_status"] == "rejected"
        assert count(session, JobModel) == 0

    def test_cancel(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        ticket = enqueuer.cancel(submitted.ticket_id, "alice", "changed my mind")
        assert ticket.status == TicketStatus.CANCELLED
        assert StatusSelector(session).get_event(submitted.event_id).status == EventStatus.CANCELLED

    def test_cannot_approve_after_reject(self, enqueuer, make_request):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        enqueuer.reject(submitted.ticket_id, "bob", "no")
        with pytest.raises(InvalidTicketStateError):
            enqueuer.approve_and_enqueue(submitted.ticket_id, "carol")

    def test_cannot_cancel_twice(self, enqueuer, make_request):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        enqueuer.cancel(submitted.ticket_id, "alice", "dup")
        with pytest.raises(InvalidTicketStateError):
            enqueuer.cancel(submitted.ticket_id, "alice", "dup")


class TestAtomicity:

    def test_failed_auto_approved_submit_writes_nothing(
        self, enqueuer, make_request, session, failing_job_insert,
    ):
        with pytest.raises(InjectedFailure):
            enqueuer.submit(make_request(), requires_approval=False)

        assert count(session, EventModel) == 0
        assert count(session, ApprovalTicketModel) == 0
        assert count(session, TicketDecisionModel) == 0
        assert count(session, JobModel) == 0

    def test_failed_approval_leaves_ticket_pending(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)

        def _fail(mapper, connection, target):
            raise InjectedFailure("job insert failed")

        sa_event.listen(JobModel, "before_insert", _fail)
        try:
            with pytest.raises(InjectedFailure):
                enqueuer.approve_and_enqueue(submitted.ticket_id, "bob", {"cpu": 4})
        finally:
            sa_event.remove(JobModel, "before_insert", _fail)

        selector = StatusSelector(session)
        ticket = selector.get_ticket(submitted.ticket_id)
        assert ticket.status == TicketStatus.PENDING_APPROVAL
        assert ticket.modified_spec is None
        assert ticket.decisions == ()
        assert selector.get_event(submitted.event_id).status == EventStatus.PENDING
        assert count(session, JobModel) == 0
        session.rollback()

        # The ticket can still be approved once the fault is gone
        approved = enqueuer.approve_and_enqueue(submitted.ticket_id, "bob")
        assert approved.job_id is not None


class TestOperations:

    @pytest.mark.parametrize(
        "operation, requested",
        [
            (Operation.DELETE_VM, EventType.VM_DELETION_REQUESTED),
            (Operation.START_VM, EventType.VM_START_REQUESTED),
            (Operation.RESTART_VM, EventType.VM_RESTART_REQUESTED),
        ],
    )
    def test_existing_vm_requests_use_vm_name(
        self, enqueuer, make_request, power_spec, session, operation, requested,
    ):
        result = enqueuer.submit(
            make_request(operation, spec=power_spec("vm-7")), requires_approval=True,
        )
        event = StatusSelector(session).get_event(result.event_id)
        assert event.event_type == requested
        assert event.aggregate_id == "vm-7"

    def test_override_dataclass_accepted(self, enqueuer, make_request, session):
        submitted = enqueuer.submit(make_request(), requires_approval=True)
        enqueuer.approve_and_enqueue(
            submitted.ticket_id, "bob", ModifiedSpec(memory_mb=2048, modified_by="lead"),
        )
        ticket = StatusSelector(session).get_ticket(submitted.ticket_id)
        assert json.loads(ticket.modified_spec)["modified_by"] == "lead"
