"""
EventLog -- append and transition rows of the event log.

Responsibility:
    The only writer of ``events`` rows.  Appends request events and outcome
    events, and moves a request event through its lifecycle.

Architecture position:
    Kernel > Services -- session-scoped, flush only.

Invariants enforced:
    - Every status change is validated against domain.lifecycle.
    - Outcome events are linked to their request event and inserted already
      in their terminal status.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select

from shepherd_kernel.domain.lifecycle import ensure_transition
from shepherd_kernel.domain.spec import canonical_json
from shepherd_kernel.domain.types import (
    AGGREGATE_TYPE_VM,
    OPERATION_EVENT_TYPES,
    EventStatus,
    EventType,
    Operation,
)
from shepherd_kernel.exceptions import EventNotFoundError
from shepherd_kernel.logging_config import get_logger
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.services.base import BaseService

logger = get_logger("services.event_log")


class EventLog(BaseService):

    def get(self, event_id: UUID, *, for_update: bool = False) -> EventModel:
        stmt = select(EventModel).where(EventModel.id == event_id)
        if for_update:
            stmt = stmt.with_for_update()
        event = self.session.execute(stmt).scalar_one_or_none()
        if event is None:
            raise EventNotFoundError(str(event_id))
        return event

    def append_request(
        self,
        *,
        event_id: UUID,
        operation: Operation,
        aggregate_id: str,
        payload: bytes,
        status: EventStatus,
        created_by: str,
    ) -> EventModel:
        now = self.clock.now()
        event = EventModel(
            id=event_id,
            event_type=OPERATION_EVENT_TYPES[operation].requested.value,
            aggregate_type=AGGREGATE_TYPE_VM,
            aggregate_id=aggregate_id,
            payload=payload,
            status=status.value,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(event)
        self.session.flush()
        logger.info(
            "event_appended",
            extra={
                "event_id": str(event_id),
                "event_type": event.event_type,
                "aggregate_id": aggregate_id,
                "status": event.status,
            },
        )
        return event

    def append_outcome(
        self,
        request: EventModel,
        event_type: EventType,
        detail: dict[str, Any],
        created_by: str,
    ) -> EventModel:
        """Append an outcome event that resolves ``request``."""
        if event_type == EventType.REQUEST_CANCELLED:
            status = EventStatus.CANCELLED
        elif event_type.value.endswith("_COMPLETED"):
            status = EventStatus.COMPLETED
        else:
            status = EventStatus.FAILED

        now = self.clock.now()
        outcome = EventModel(
            id=uuid4(),
            event_type=event_type.value,
            aggregate_type=request.aggregate_type,
            aggregate_id=request.aggregate_id,
            payload=canonical_json(detail),
            status=status.value,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            caused_by_event_id=request.id,
        )
        self.session.add(outcome)
        self.session.flush()
        return outcome

    def transition(self, event: EventModel, target: EventStatus) -> None:
        ensure_transition(EventStatus(event.status), target)
        previous = event.status
        event.status = target.value
        event.updated_at = self.clock.now()
        self.session.flush()
        logger.info(
            "event_status_changed",
            extra={
                "event_id": str(event.id),
                "from_status": previous,
                "to_status": target.value,
            },
        )

    def complete(self, request: EventModel, observed_state: dict[str, Any], actor: str) -> EventModel:
        operation = operation_for_event_type(EventType(request.event_type))
        self.transition(request, EventStatus.COMPLETED)
        return self.append_outcome(
            request,
            OPERATION_EVENT_TYPES[operation].completed,
            {"observed_state": observed_state},
            actor,
        )

    def fail(
        self,
        request: EventModel,
        error_code: str,
        message: str,
        actor: str,
        observed_state: dict[str, Any] | None = None,
    ) -> EventModel:
        operation = operation_for_event_type(EventType(request.event_type))
        self.transition(request, EventStatus.FAILED)
        detail: dict[str, Any] = {"error_code": error_code, "error": message}
        if observed_state:
            detail["observed_state"] = observed_state
        return self.append_outcome(
            request, OPERATION_EVENT_TYPES[operation].failed, detail, actor,
        )


_REQUESTED_TO_OPERATION = {
    types.requested: operation for operation, types in OPERATION_EVENT_TYPES.items()
}


def operation_for_event_type(event_type: EventType) -> Operation:
    try:
        return _REQUESTED_TO_OPERATION[event_type]
    except KeyError:
        raise ValueError(f"{event_type.value} is not a request event type") from None
