"""
Module: shepherd_kernel.models.event
Responsibility: ORM persistence for the event log -- request events and the
    outcome events that resolve them.
Architecture position: Kernel > Models.  May import from db/base.py,
    domain/types.py and exceptions.py only.

Invariants enforced:
    - Payload is write-once.  A before_update listener rejects any change to
      payload or to the identifying columns of an existing row.
    - Events are never deleted; retention archives them instead.
    - Outcome events point at the request they resolve via
      caused_by_event_id.

Failure modes:
    - ImmutabilityViolationError on UPDATE of a write-once column.
    - ImmutabilityViolationError on DELETE.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    LargeBinary,
    String,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from shepherd_kernel.db.base import TimestampedBase, UUIDString
from shepherd_kernel.domain.types import DomainEvent, EventStatus, EventType
from shepherd_kernel.exceptions import ImmutabilityViolationError

_WRITE_ONCE_COLUMNS = (
    "payload",
    "event_type",
    "aggregate_type",
    "aggregate_id",
    "created_by",
    "created_at",
    "caused_by_event_id",
)


class EventModel(TimestampedBase):
    """
    One entry in the event log.

    Contract:
        Only status, updated_at and archived_at change after insert.  A
        change of intent is expressed through the approval ticket's
        modified spec, never by rewriting the payload.
    """

    __tablename__ = "events"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_events_valid_status",
        ),
        Index("idx_events_aggregate", "aggregate_type", "aggregate_id", "created_at"),
        Index("idx_events_status_created", "status", "created_at"),
        Index("idx_events_caused_by", "caused_by_event_id"),
    )

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(32), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Canonical JSON of the requested spec, or the observed outcome
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    caused_by_event_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("events.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Event {self.event_type}:{self.id} status={self.status}>"

    def to_dto(self) -> DomainEvent:
        """Convert ORM model to frozen domain DTO."""
        return DomainEvent(
            event_id=self.id,
            event_type=EventType(self.event_type),
            aggregate_type=self.aggregate_type,
            aggregate_id=self.aggregate_id,
            payload=self.payload,
            status=EventStatus(self.status),
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
            archived_at=self.archived_at,
            caused_by_event_id=self.caused_by_event_id,
        )


# =============================================================================
# ORM-level write-once protection
# =============================================================================


@event.listens_for(EventModel, "before_update")
def prevent_event_rewrite(mapper, connection, target):
    """Reject changes to write-once columns of a persisted event."""
    for column in _WRITE_ONCE_COLUMNS:
        history = get_history(target, column)
        if history.deleted and history.deleted[0] is not None:
            raise ImmutabilityViolationError(
                entity_type="Event",
                entity_id=str(target.id),
                reason=f"{column} is write-once",
            )


@event.listens_for(EventModel, "before_delete")
def prevent_event_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Event",
        entity_id=str(target.id),
        reason="events are archived, never deleted",
    )
