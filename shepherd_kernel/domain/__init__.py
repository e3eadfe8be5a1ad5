"""Pure domain layer: DTOs, state machines, spec resolution, clocks."""

from shepherd_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from shepherd_kernel.domain.lifecycle import (
    TERMINAL_EVENT_STATUSES,
    TERMINAL_JOB_STATES,
    TERMINAL_TICKET_STATUSES,
    can_transition,
    ensure_transition,
)
from shepherd_kernel.domain.spec import (
    ModifiedSpec,
    ResourceSpec,
    encode_payload,
    get_effective_spec,
    parse_modified_spec,
)
from shepherd_kernel.domain.types import (
    AGGREGATE_TYPE_VM,
    OPERATION_EVENT_TYPES,
    ApprovalTicket,
    DecisionType,
    DomainEvent,
    EventStatus,
    EventType,
    Job,
    JobOutcome,
    JobState,
    LeasedJob,
    Operation,
    OutcomeKind,
    RecordedOutcome,
    SubmissionRequest,
    SubmissionResult,
    TicketDecision,
    TicketStatus,
)

__all__ = [
    "AGGREGATE_TYPE_VM",
    "OPERATION_EVENT_TYPES",
    "ApprovalTicket",
    "Clock",
    "DecisionType",
    "DeterministicClock",
    "DomainEvent",
    "EventStatus",
    "EventType",
    "Job",
    "JobOutcome",
    "JobState",
    "LeasedJob",
    "ModifiedSpec",
    "Operation",
    "OutcomeKind",
    "RecordedOutcome",
    "ResourceSpec",
    "SubmissionRequest",
    "SubmissionResult",
    "SystemClock",
    "TERMINAL_EVENT_STATUSES",
    "TERMINAL_JOB_STATES",
    "TERMINAL_TICKET_STATUSES",
    "TicketDecision",
    "TicketStatus",
    "can_transition",
    "encode_payload",
    "ensure_transition",
    "get_effective_spec",
    "parse_modified_spec",
]
