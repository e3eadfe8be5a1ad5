"""
Module: shepherd_kernel.models.ticket
Responsibility: ORM persistence for approval tickets and their decision trail.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/types.py and exceptions.py only.

Invariants enforced:
    - Exactly one ticket per event (UNIQUE event_id).
    - Status values limited by a check constraint; transition rules are
      enforced by the enqueuer against domain.lifecycle.
    - Decision rows are append-only: no UPDATE, no DELETE.

Failure modes:
    - IntegrityError on a second ticket for the same event.
    - ImmutabilityViolationError on decision UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shepherd_kernel.db.base import Base, TimestampedBase, UUIDString
from shepherd_kernel.domain.types import (
    ApprovalTicket,
    DecisionType,
    Operation,
    TicketDecision,
    TicketStatus,
)
from shepherd_kernel.exceptions import ImmutabilityViolationError


class ApprovalTicketModel(TimestampedBase):
    """Persistent approval ticket.

    Contract:
        Leaves pending_approval at most once.  modified_spec is written only
        in the approving transaction.
    """

    __tablename__ = "approval_tickets"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_approval', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_tickets_valid_status",
        ),
        Index("idx_approval_tickets_status_created", "status", "created_at"),
    )

    event_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("events.id"),
        nullable=False,
        unique=True,
    )
    request_type: Mapped[str] = mapped_column(String(32), nullable=False)
    request_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    # Carried onto the job when the ticket is approved
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    modified_spec: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    matched_rule: Mapped[str | None] = mapped_column(String(200), nullable=True)

    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    decisions: Mapped[list["TicketDecisionModel"]] = relationship(
        "TicketDecisionModel",
        back_populates="ticket",
        order_by="TicketDecisionModel.decided_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalTicket {self.id} event={self.event_id} status={self.status}>"

    def to_dto(self) -> ApprovalTicket:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalTicket(
            ticket_id=self.id,
            event_id=self.event_id,
            request_type=Operation(self.request_type),
            status=TicketStatus(self.status),
            request_reason=self.request_reason,
            created_by=self.created_by,
            created_at=self.created_at,
            priority=self.priority,
            modified_spec=self.modified_spec,
            auto_approved=self.auto_approved,
            matched_rule=self.matched_rule,
            decided_by=self.decided_by,
            decided_at=self.decided_at,
            decision_reason=self.decision_reason,
            decisions=tuple(d.to_dto() for d in self.decisions),
        )


class TicketDecisionModel(Base):
    """One decision on a ticket. Append-only."""

    __tablename__ = "ticket_decisions"

    __table_args__ = (
        Index("idx_ticket_decisions_ticket", "ticket_id", "decided_at"),
    )

    ticket_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_tickets.id"),
        nullable=False,
    )
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    ticket: Mapped["ApprovalTicketModel"] = relationship(
        "ApprovalTicketModel",
        back_populates="decisions",
    )

    def __repr__(self) -> str:
        return f"<TicketDecision {self.id} ticket={self.ticket_id} {self.decision}>"

    def to_dto(self) -> TicketDecision:
        return TicketDecision(
            decision_id=self.id,
            ticket_id=self.ticket_id,
            decision=DecisionType(self.decision),
            actor=self.actor,
            reason=self.reason,
            decided_at=self.decided_at,
        )


@event.listens_for(TicketDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="TicketDecision",
        entity_id=str(target.id),
        reason="ticket decisions are append-only -- cannot modify",
    )


@event.listens_for(TicketDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="TicketDecision",
        entity_id=str(target.id),
        reason="ticket decisions are append-only -- cannot delete",
    )
