"""
Module: shepherd_kernel.selectors.status_selector
Responsibility: Read-only status queries over events, tickets and jobs.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/types.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: never adds, flushes or commits.
    - Returns frozen DTOs, never ORM instances.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shepherd_kernel.domain.types import (
    ApprovalTicket,
    DomainEvent,
    Job,
    JobState,
    TicketDecision,
    TicketStatus,
)
from shepherd_kernel.exceptions import (
    EventNotFoundError,
    JobNotFoundError,
    TicketNotFoundError,
)
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.models.ticket import ApprovalTicketModel, TicketDecisionModel


class StatusSelector:
    """
    Contract:
        The caller owns the session and its transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_event(self, event_id: UUID) -> DomainEvent:
        event = self.session.get(EventModel, event_id)
        if event is None:
            raise EventNotFoundError(str(event_id))
        return event.to_dto()

    def get_ticket(self, ticket_id: UUID) -> ApprovalTicket:
        ticket = self.session.get(ApprovalTicketModel, ticket_id)
        if ticket is None:
            raise TicketNotFoundError(str(ticket_id))
        return ticket.to_dto()

    def get_ticket_for_event(self, event_id: UUID) -> ApprovalTicket:
        ticket = self.session.execute(
            select(ApprovalTicketModel).where(ApprovalTicketModel.event_id == event_id)
        ).scalar_one_or_none()
        if ticket is None:
            raise TicketNotFoundError(f"event:{event_id}")
        return ticket.to_dto()

    def get_job(self, job_id: UUID) -> Job:
        job = self.session.get(JobModel, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job.to_dto()

    def find_job_for_event(self, event_id: UUID) -> Job | None:
        job = self.session.execute(
            select(JobModel).where(JobModel.event_id == event_id)
        ).scalar_one_or_none()
        return job.to_dto() if job is not None else None

    def get_decisions(self, ticket_id: UUID) -> list[TicketDecision]:
        rows = self.session.execute(
            select(TicketDecisionModel)
            .where(TicketDecisionModel.ticket_id == ticket_id)
            .order_by(TicketDecisionModel.decided_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def get_outcome_events(self, event_id: UUID) -> list[DomainEvent]:
        """Outcome events (completed / failed / cancelled) caused by a request."""
        rows = self.session.execute(
            select(EventModel)
            .where(EventModel.caused_by_event_id == event_id)
            .order_by(EventModel.created_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def list_events_for_aggregate(
        self, aggregate_id: str, include_archived: bool = False,
    ) -> list[DomainEvent]:
        stmt = (
            select(EventModel)
            .where(EventModel.aggregate_id == aggregate_id)
            .order_by(EventModel.created_at)
        )
        if not include_archived:
            stmt = stmt.where(EventModel.archived_at.is_(None))
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def list_pending_tickets(self, limit: int = 100) -> list[ApprovalTicket]:
        rows = self.session.execute(
            select(ApprovalTicketModel)
            .where(ApprovalTicketModel.status == TicketStatus.PENDING_APPROVAL.value)
            .order_by(ApprovalTicketModel.created_at)
            .limit(limit)
        ).scalars()
        return [row.to_dto() for row in rows]

    def queue_depth(self) -> dict[JobState, int]:
        """Job count per state; states with no jobs report 0."""
        counts = {state: 0 for state in JobState}
        rows = self.session.execute(
            select(JobModel.state, func.count()).group_by(JobModel.state)
        ).all()
        for state, count in rows:
            counts[JobState(state)] = count
        return counts
