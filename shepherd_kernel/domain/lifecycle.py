"""
Lifecycle state machines for events, tickets and jobs.

Pure tables plus one validator.  Terminal states have no outgoing edges, so
"no transition leaves a terminal state" holds by construction.  Services call
``ensure_transition`` before writing any status column.
"""

from __future__ import annotations

from enum import Enum

from shepherd_kernel.domain.types import EventStatus, JobState, TicketStatus
from shepherd_kernel.exceptions import InvalidStateTransitionError


EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PENDING: frozenset({
        EventStatus.PROCESSING,
        EventStatus.CANCELLED,
    }),
    EventStatus.PROCESSING: frozenset({
        EventStatus.COMPLETED,
        EventStatus.FAILED,
    }),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.FAILED: frozenset(),
    EventStatus.CANCELLED: frozenset(),
}

TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.PENDING_APPROVAL: frozenset({
        TicketStatus.APPROVED,
        TicketStatus.REJECTED,
        TicketStatus.CANCELLED,
    }),
    # Approved is terminal for the ticket; the job it spawned lives on.
    TicketStatus.APPROVED: frozenset(),
    TicketStatus.REJECTED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}

JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.AVAILABLE: frozenset({
        JobState.RUNNING,
        JobState.DISCARDED,  # stop requested before lease
    }),
    JobState.RUNNING: frozenset({
        JobState.COMPLETED,
        JobState.RETRYABLE,
        JobState.DISCARDED,
        JobState.AVAILABLE,  # lease reclaimed
    }),
    JobState.RETRYABLE: frozenset({
        JobState.AVAILABLE,
        JobState.DISCARDED,
    }),
    JobState.COMPLETED: frozenset(),
    JobState.DISCARDED: frozenset(),
}

TERMINAL_EVENT_STATUSES = frozenset(
    s for s, targets in EVENT_TRANSITIONS.items() if not targets
)
TERMINAL_TICKET_STATUSES = frozenset(
    s for s, targets in TICKET_TRANSITIONS.items() if not targets
)
TERMINAL_JOB_STATES = frozenset(
    s for s, targets in JOB_TRANSITIONS.items() if not targets
)

_MACHINES: dict[type, tuple[str, dict]] = {
    EventStatus: ("event", EVENT_TRANSITIONS),
    TicketStatus: ("ticket", TICKET_TRANSITIONS),
    JobState: ("job", JOB_TRANSITIONS),
}


def can_transition(current: Enum, target: Enum) -> bool:
    _, table = _MACHINES[type(current)]
    return target in table[current]


def ensure_transition(current: Enum, target: Enum) -> None:
    """Raise InvalidStateTransitionError unless ``current -> target`` is legal."""
    entity_type, table = _MACHINES[type(current)]
    if type(target) is not type(current) or target not in table[current]:
        raise InvalidStateTransitionError(
            entity_type, current.value, getattr(target, "value", str(target)),
        )
