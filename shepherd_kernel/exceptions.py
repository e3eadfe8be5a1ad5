"""
Typed exception hierarchy for the governance pipeline.

Every error has a typed class, a machine-readable ``code`` class attribute,
and structured attributes instead of a message to parse.

    ShepherdError (base)
    |
    +-- RequestError
    |   +-- PolicyInputInvalidError
    |   +-- InvalidResourceSpecError
    |   +-- InvalidModifiedSpecError
    |   +-- EffectiveSpecError
    |
    +-- NotFoundError
    |   +-- EventNotFoundError
    |   +-- TicketNotFoundError
    |   +-- JobNotFoundError
    |
    +-- StateError
    |   +-- InvalidTicketStateError
    |   +-- InvalidStateTransitionError
    |   +-- ImmutabilityViolationError
    |
    +-- ConcurrencyError
    |   +-- TransactionConflictError
    |   +-- LeaseExpiredError
    |
    +-- ProviderError
        +-- ProviderTransientError
        +-- ProviderPermanentError

Categories map to handling:
    - RequestError / StateError -> rejected at the submission boundary.
    - ConcurrencyError -> retried or dropped inside the pipeline.
    - ProviderError -> never reaches the submitter; becomes a job outcome.
"""

from __future__ import annotations

from typing import Any


class ShepherdError(Exception):
    """Base exception for all governance pipeline errors."""

    code: str = "SHEPHERD_ERROR"


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


class RequestError(ShepherdError):
    """Base for malformed or unacceptable requests."""

    code: str = "REQUEST_ERROR"


class PolicyInputInvalidError(RequestError):
    """Auto-approval evaluator received malformed input."""

    code: str = "POLICY_INPUT_INVALID"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid policy input '{field}': {reason}")


class InvalidResourceSpecError(RequestError):
    """Requested resource spec is incomplete for the operation."""

    code: str = "INVALID_RESOURCE_SPEC"

    def __init__(self, operation: str, field_errors: list[str]):
        self.operation = operation
        self.field_errors = field_errors
        super().__init__(
            f"Invalid spec for {operation}: {'; '.join(field_errors)}"
        )


class InvalidModifiedSpecError(RequestError):
    """Approver supplied an override that cannot be applied."""

    code: str = "INVALID_MODIFIED_SPEC"

    def __init__(self, reason: str, fields: tuple[str, ...] = ()):
        self.reason = reason
        self.fields = fields
        super().__init__(f"Invalid modified spec: {reason}")


class EffectiveSpecError(RequestError):
    """Stored payload or override bytes could not be decoded."""

    code: str = "EFFECTIVE_SPEC_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot resolve effective spec: {reason}")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(ShepherdError):
    code: str = "NOT_FOUND"


class EventNotFoundError(NotFoundError):
    code: str = "EVENT_NOT_FOUND"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event not found: {event_id}")


class TicketNotFoundError(NotFoundError):
    code: str = "TICKET_NOT_FOUND"

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Approval ticket not found: {ticket_id}")


class JobNotFoundError(NotFoundError):
    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class StateError(ShepherdError):
    code: str = "STATE_ERROR"


class InvalidTicketStateError(StateError):
    """Ticket is not in the state the operation requires.

    Raised when approving, rejecting or cancelling a ticket that already
    left ``pending_approval``.
    """

    code: str = "INVALID_TICKET_STATE"

    def __init__(self, ticket_id: str, current_status: str, action: str):
        self.ticket_id = ticket_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} ticket {ticket_id}: status is {current_status}"
        )


class InvalidStateTransitionError(StateError):
    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, entity_type: str, from_state: str, to_state: str):
        self.entity_type = entity_type
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid {entity_type} transition: {from_state} -> {to_state}"
        )


class ImmutabilityViolationError(StateError):
    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class ConcurrencyError(ShepherdError):
    code: str = "CONCURRENCY_ERROR"


class TransactionConflictError(ConcurrencyError):
    """Row-lock or serialization contention outlasted the retry budget."""

    code: str = "TRANSACTION_CONFLICT"

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Transaction conflict in {operation} after {attempts} attempt(s)"
        )


class LeaseExpiredError(ConcurrencyError):
    """Worker reported on a job whose lease it no longer holds."""

    code: str = "LEASE_EXPIRED"

    def __init__(self, job_id: str, worker_id: str):
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(
            f"Lease on job {job_id} no longer held by worker {worker_id}"
        )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ProviderError(ShepherdError):
    code: str = "PROVIDER_ERROR"

    def __init__(
        self,
        operation: str,
        message: str,
        observed_state: dict[str, Any] | None = None,
    ):
        self.operation = operation
        self.observed_state = observed_state
        super().__init__(f"{operation}: {message}")


class ProviderTransientError(ProviderError):
    """Network, timeout or resource-busy failure. Safe to retry."""

    code: str = "PROVIDER_TRANSIENT"


class ProviderPermanentError(ProviderError):
    """Validation or semantic failure. Retrying will not help."""

    code: str = "PROVIDER_PERMANENT"
