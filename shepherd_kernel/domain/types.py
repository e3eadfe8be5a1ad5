"""
shepherd_kernel.domain.types -- Pure frozen dataclasses and enums.

ZERO I/O.  Every DTO handed across a service boundary is a frozen dataclass
built from an ORM row with ``to_dto()``; callers never hold live ORM objects
outside a transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Operations and event types
# =============================================================================


class Operation(str, Enum):
    """Closed set of VM mutations the pipeline can execute."""

    CREATE_VM = "create_vm"
    MODIFY_VM = "modify_vm"
    DELETE_VM = "delete_vm"
    START_VM = "start_vm"
    STOP_VM = "stop_vm"
    RESTART_VM = "restart_vm"


class EventType(str, Enum):
    VM_CREATION_REQUESTED = "VM_CREATION_REQUESTED"
    VM_CREATION_COMPLETED = "VM_CREATION_COMPLETED"
    VM_CREATION_FAILED = "VM_CREATION_FAILED"

    VM_MODIFY_REQUESTED = "VM_MODIFY_REQUESTED"
    VM_MODIFY_COMPLETED = "VM_MODIFY_COMPLETED"
    VM_MODIFY_FAILED = "VM_MODIFY_FAILED"

    VM_DELETION_REQUESTED = "VM_DELETION_REQUESTED"
    VM_DELETION_COMPLETED = "VM_DELETION_COMPLETED"
    VM_DELETION_FAILED = "VM_DELETION_FAILED"

    VM_START_REQUESTED = "VM_START_REQUESTED"
    VM_START_COMPLETED = "VM_START_COMPLETED"
    VM_START_FAILED = "VM_START_FAILED"

    VM_STOP_REQUESTED = "VM_STOP_REQUESTED"
    VM_STOP_COMPLETED = "VM_STOP_COMPLETED"
    VM_STOP_FAILED = "VM_STOP_FAILED"

    VM_RESTART_REQUESTED = "VM_RESTART_REQUESTED"
    VM_RESTART_COMPLETED = "VM_RESTART_COMPLETED"
    VM_RESTART_FAILED = "VM_RESTART_FAILED"

    REQUEST_CANCELLED = "REQUEST_CANCELLED"


@dataclass(frozen=True)
class OperationEventTypes:
    requested: EventType
    completed: EventType
    failed: EventType


OPERATION_EVENT_TYPES: dict[Operation, OperationEventTypes] = {
    Operation.CREATE_VM: OperationEventTypes(
        EventType.VM_CREATION_REQUESTED,
        EventType.VM_CREATION_COMPLETED,
        EventType.VM_CREATION_FAILED,
    ),
    Operation.MODIFY_VM: OperationEventTypes(
        EventType.VM_MODIFY_REQUESTED,
        EventType.VM_MODIFY_COMPLETED,
        EventType.VM_MODIFY_FAILED,
    ),
    Operation.DELETE_VM: OperationEventTypes(
        EventType.VM_DELETION_REQUESTED,
        EventType.VM_DELETION_COMPLETED,
        EventType.VM_DELETION_FAILED,
    ),
    Operation.START_VM: OperationEventTypes(
        EventType.VM_START_REQUESTED,
        EventType.VM_START_COMPLETED,
        EventType.VM_START_FAILED,
    ),
    Operation.STOP_VM: OperationEventTypes(
        EventType.VM_STOP_REQUESTED,
        EventType.VM_STOP_COMPLETED,
        EventType.VM_STOP_FAILED,
    ),
    Operation.RESTART_VM: OperationEventTypes(
        EventType.VM_RESTART_REQUESTED,
        EventType.VM_RESTART_COMPLETED,
        EventType.VM_RESTART_FAILED,
    ),
}

AGGREGATE_TYPE_VM = "VM"


# =============================================================================
# Status enums
# =============================================================================


class EventStatus(str, Enum):
    PENDING = "pending"  # Waiting for approval
    PROCESSING = "processing"  # Authorized, job enqueued
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Rejected or cancelled before a job existed


class TicketStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class JobState(str, Enum):
    AVAILABLE = "available"
    RUNNING = "running"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    RETRYABLE = "retryable"


class DecisionType(str, Enum):
    """Entries in the append-only ticket decision trail."""

    AUTO_APPROVE = "auto_approve"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


# =============================================================================
# Entity DTOs
# =============================================================================


@dataclass(frozen=True)
class DomainEvent:
    """Immutable snapshot of an event log row."""

    event_id: UUID
    event_type: EventType
    aggregate_type: str
    aggregate_id: str
    payload: bytes
    status: EventStatus
    created_by: str
    created_at: datetime
    updated_at: datetime | None = None
    archived_at: datetime | None = None
    caused_by_event_id: UUID | None = None


@dataclass(frozen=True)
class TicketDecision:
    decision_id: UUID
    ticket_id: UUID
    decision: DecisionType
    actor: str
    reason: str
    decided_at: datetime


@dataclass(frozen=True)
class ApprovalTicket:
    ticket_id: UUID
    event_id: UUID
    request_type: Operation
    status: TicketStatus
    request_reason: str
    created_by: str
    created_at: datetime
    priority: int = 1
    modified_spec: bytes | None = None
    auto_approved: bool = False
    matched_rule: str | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    decision_reason: str | None = None
    decisions: tuple[TicketDecision, ...] = ()


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job row.  Carries no payload (claim check)."""

    job_id: UUID
    event_id: UUID
    operation: Operation
    aggregate_id: str
    state: JobState
    priority: int
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    created_at: datetime
    lease_owner: str | None = None
    lease_token: UUID | None = None
    leased_at: datetime | None = None
    lease_expires_at: datetime | None = None
    stop_requested: bool = False
    last_error_code: str | None = None
    last_error: str | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class LeasedJob:
    """What a worker holds while executing: identifiers plus its lease."""

    job_id: UUID
    event_id: UUID
    operation: Operation
    aggregate_id: str
    attempt: int
    max_attempts: int
    worker_id: str
    lease_token: UUID
    lease_expires_at: datetime
    stop_requested: bool = False


# =============================================================================
# Submission boundary
# =============================================================================


@dataclass(frozen=True)
class SubmissionRequest:
    """A requested change, ready to be written by the enqueuer."""

    operation: Operation
    aggregate_id: str | None  # None -> temporary id derived from event id
    payload: bytes
    requested_by: str
    reason: str
    priority: int = 1
    service_id: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
    event_id: UUID
    ticket_id: UUID
    event_status: EventStatus
    ticket_status: TicketStatus
    job_id: UUID | None = None


# =============================================================================
# Execution outcome
# =============================================================================


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class JobOutcome:
    """Result of one execution attempt, as handed to the outcome recorder."""

    kind: OutcomeKind
    observed_state: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RecordedOutcome:
    """What the outcome recorder persisted for an attempt."""

    job_id: UUID
    event_id: UUID
    job_state: JobState
    event_status: EventStatus
    attempt: int
    next_attempt_at: datetime | None = None
    outcome_event_id: UUID | None = None
