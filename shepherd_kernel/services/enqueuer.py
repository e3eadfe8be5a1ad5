"""
TransactionalEnqueuer -- atomic bookkeeping for governed requests.

Responsibility:
    Commit event + ticket (+ job when already authorized) as one unit of
    work, and turn a human decision into ticket update + event transition
    (+ job) as one unit of work.

Architecture position:
    Kernel > Services -- coordinating service.  Owns its transactions via
    run_in_transaction; uses EventLog and insert_job inside them.

Invariants enforced:
    - Atomicity: every method commits as a whole or not at all.
    - No premature job: a job row exists only if the ticket is approved,
      and it is inserted in the same commit that approved it.
    - A ticket leaves pending_approval at most once.  The ticket row is
      locked (FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite) before
      its status is read.

Failure modes:
    - TicketNotFoundError / InvalidTicketStateError on decisions.
    - InvalidModifiedSpecError when an override cannot be applied.
    - TransactionConflictError when contention outlasts the retry budget.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from shepherd_kernel.db.engine import run_in_transaction
from shepherd_kernel.domain.clock import Clock
from shepherd_kernel.domain.lifecycle import ensure_transition
from shepherd_kernel.domain.spec import (
    ModifiedSpec,
    encode_modified_spec,
    get_effective_spec,
    parse_modified_spec,
)
from shepherd_kernel.domain.types import (
    ApprovalTicket,
    DecisionType,
    EventStatus,
    EventType,
    Operation,
    SubmissionRequest,
    SubmissionResult,
    TicketStatus,
)
from shepherd_kernel.exceptions import (
    EffectiveSpecError,
    InvalidModifiedSpecError,
    InvalidResourceSpecError,
    InvalidTicketStateError,
    TicketNotFoundError,
)
from shepherd_kernel.logging_config import LogContext, get_logger
from shepherd_kernel.models.ticket import ApprovalTicketModel, TicketDecisionModel
from shepherd_kernel.services.event_log import EventLog
from shepherd_kernel.services.job_queue import insert_job

logger = get_logger("services.enqueuer")

AUTO_APPROVER = "system:auto-approval"


def temporary_aggregate_id(service_id: str, event_id: UUID) -> str:
    """Aggregate id for a VM that does not exist yet."""
    return f"{service_id}-{str(event_id)[:8]}"


class TransactionalEnqueuer:
    """
    Usage:
        enqueuer = TransactionalEnqueuer(session_factory, clock)
        result = enqueuer.submit(request, requires_approval=True)
        enqueuer.approve_and_enqueue(result.ticket_id, approver="alice")
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        *,
        max_attempts: int = 5,
        conflict_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._max_attempts = max_attempts
        self._conflict_attempts = conflict_attempts

    def _run(self, work, operation: str):
        return run_in_transaction(
            self._session_factory,
            work,
            operation=operation,
            max_attempts=self._conflict_attempts,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        request: SubmissionRequest,
        requires_approval: bool,
        matched_rule: str | None = None,
    ) -> SubmissionResult:
        """Record a request.

        With ``requires_approval`` the event is pending and the ticket waits
        for a human.  Otherwise the event is processing, the ticket is
        approved (auto) and the job is inserted in the same commit.
        """

        def work(session: Session) -> SubmissionResult:
            now = self._clock.now()
            event_id = uuid4()
            aggregate_id = request.aggregate_id
            if aggregate_id is None:
                if not request.service_id:
                    raise InvalidResourceSpecError(
                        request.operation.value,
                        ["service_id is required to derive a temporary aggregate id"],
                    )
                aggregate_id = temporary_aggregate_id(request.service_id, event_id)

            events = EventLog(session, self._clock)
            event = events.append_request(
                event_id=event_id,
                operation=request.operation,
                aggregate_id=aggregate_id,
                payload=request.payload,
                status=EventStatus.PENDING if requires_approval else EventStatus.PROCESSING,
                created_by=request.requested_by,
            )

            ticket = ApprovalTicketModel(
                id=uuid4(),
                event_id=event.id,
                request_type=request.operation.value,
                request_reason=request.reason,
                created_by=request.requested_by,
                priority=request.priority,
                status=TicketStatus.PENDING_APPROVAL.value,
                auto_approved=False,
                created_at=now,
                updated_at=now,
            )
            session.add(ticket)

            job_id = None
            if not requires_approval:
                ticket.status = TicketStatus.APPROVED.value
                ticket.auto_approved = True
                ticket.matched_rule = matched_rule
                ticket.decided_by = AUTO_APPROVER
                ticket.decided_at = now
                ticket.decision_reason = _auto_reason(matched_rule)
                session.add(
                    TicketDecisionModel(
                        id=uuid4(),
                        ticket_id=ticket.id,
                        actor=AUTO_APPROVER,
                        decision=DecisionType.AUTO_APPROVE.value,
                        reason=ticket.decision_reason,
                        decided_at=now,
                    )
                )
                session.flush()
                job_id = insert_job(
                    session,
                    event_id=event.id,
                    operation=request.operation,
                    aggregate_id=aggregate_id,
                    priority=request.priority,
                    max_attempts=self._max_attempts,
                    now=now,
                ).id
            session.flush()

            return SubmissionResult(
                event_id=event.id,
                ticket_id=ticket.id,
                event_status=EventStatus(event.status),
                ticket_status=TicketStatus(ticket.status),
                job_id=job_id,
            )

        with LogContext.bind(actor=request.requested_by):
            result = self._run(work, "submit")
            logger.info(
                "request_submitted",
                extra={
                    "event_id": str(result.event_id),
                    "ticket_id": str(result.ticket_id),
                    "operation": request.operation.value,
                    "requires_approval": requires_approval,
                    "matched_rule": matched_rule,
                },
            )
        return result

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve_and_enqueue(
        self,
        ticket_id: UUID,
        approver: str,
        modified_spec: ModifiedSpec | Mapping[str, Any] | None = None,
        reason: str = "",
    ) -> SubmissionResult:
        """Approve a pending ticket and insert its job in the same commit."""
        override = parse_modified_spec(modified_spec) if modified_spec is not None else None

        def work(session: Session) -> SubmissionResult:
            now = self._clock.now()
            ticket = self._lock_pending(session, ticket_id, "approve")
            events = EventLog(session, self._clock)
            event = events.get(ticket.event_id, for_update=True)
            operation = Operation(ticket.request_type)

            encoded = None
            if override is not None:
                if override.modified_by is None:
                    encoded = encode_modified_spec(replace(override, modified_by=approver))
                else:
                    encoded = encode_modified_spec(override)
                _check_effective(event.payload, encoded, operation)

            ensure_transition(TicketStatus(ticket.status), TicketStatus.APPROVED)
            ticket.status = TicketStatus.APPROVED.value
            ticket.modified_spec = encoded
            ticket.decided_by = approver
            ticket.decided_at = now
            ticket.decision_reason = reason
            ticket.updated_at = now
            session.add(
                TicketDecisionModel(
                    id=uuid4(),
                    ticket_id=ticket.id,
                    actor=approver,
                    decision=DecisionType.APPROVE.value,
                    reason=reason,
                    decided_at=now,
                )
            )
            session.flush()

            events.transition(event, EventStatus.PROCESSING)
            job = insert_job(
                session,
                event_id=event.id,
                operation=operation,
                aggregate_id=event.aggregate_id,
                priority=ticket.priority,
                max_attempts=self._max_attempts,
                now=now,
            )
            return SubmissionResult(
                event_id=event.id,
                ticket_id=ticket.id,
                event_status=EventStatus.PROCESSING,
                ticket_status=TicketStatus.APPROVED,
                job_id=job.id,
            )

        with LogContext.bind(actor=approver, ticket_id=str(ticket_id)):
            result = self._run(work, "approve_and_enqueue")
            logger.info(
                "ticket_approved",
                extra={
                    "event_id": str(result.event_id),
                    "job_id": str(result.job_id),
                    "modified": override is not None,
                },
            )
        return result

    def reject(self, ticket_id: UUID, actor: str, reason: str) -> ApprovalTicket:
        return self._close(ticket_id, actor, reason, TicketStatus.REJECTED, DecisionType.REJECT)

    def cancel(self, ticket_id: UUID, actor: str, reason: str) -> ApprovalTicket:
        return self._close(ticket_id, actor, reason, TicketStatus.CANCELLED, DecisionType.CANCEL)

    def _close(
        self,
        ticket_id: UUID,
        actor: str,
        reason: str,
        target: TicketStatus,
        decision: DecisionType,
    ) -> ApprovalTicket:
        def work(session: Session) -> ApprovalTicket:
            now = self._clock.now()
            ticket = self._lock_pending(session, ticket_id, decision.value)
            events = EventLog(session, self._clock)
            event = events.get(ticket.event_id, for_update=True)

            ensure_transition(TicketStatus(ticket.status), target)
            ticket.status = target.value
            ticket.decided_by = actor
            ticket.decided_at = now
            ticket.decision_reason = reason
            ticket.updated_at = now
            session.add(
                TicketDecisionModel(
                    id=uuid4(),
                    ticket_id=ticket.id,
                    actor=actor,
                    decision=decision.value,
                    reason=reason,
                    decided_at=now,
                )
            )
            session.flush()

            events.transition(event, EventStatus.CANCELLED)
            events.append_outcome(
                event,
                EventType.REQUEST_CANCELLED,
                {"ticket_status": target.value, "actor": actor, "reason": reason},
                actor,
            )
            session.refresh(ticket)
            return ticket.to_dto()

        with LogContext.bind(actor=actor, ticket_id=str(ticket_id)):
            result = self._run(work, f"{decision.value}_ticket")
            logger.info(
                "ticket_closed",
                extra={"event_id": str(result.event_id), "ticket_status": target.value},
            )
        return result

    @staticmethod
    def _lock_pending(session: Session, ticket_id: UUID, action: str) -> ApprovalTicketModel:
        ticket = session.execute(
            select(ApprovalTicketModel)
            .where(ApprovalTicketModel.id == ticket_id)
            .with_for_update()
        ).scalar_one_or_none()
        if ticket is None:
            raise TicketNotFoundError(str(ticket_id))
        if ticket.status != TicketStatus.PENDING_APPROVAL.value:
            raise InvalidTicketStateError(str(ticket_id), ticket.status, action)
        return ticket


def _auto_reason(matched_rule: str | None) -> str:
    if matched_rule:
        return f"auto-approved by rule '{matched_rule}'"
    return "auto-approved"


def _check_effective(payload: bytes, encoded_override: bytes, operation: Operation) -> None:
    """The override must still leave a spec that can drive the operation."""
    try:
        effective = get_effective_spec(payload, encoded_override)
        effective.validate_for(operation)
    except (EffectiveSpecError, InvalidResourceSpecError) as exc:
        raise InvalidModifiedSpecError(str(exc)) from exc
