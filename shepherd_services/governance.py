"""
GovernanceService -- the submission boundary.

Responsibility:
    Accept a VM change request from an already-authenticated caller,
    decide (purely) whether it may skip human approval, and hand it to the
    transactional enqueuer.  Also the entrypoint for approver decisions,
    stop requests and status lookups.

Architecture position:
    Services -- composes shepherd_engines (pure) with shepherd_kernel
    services.  Never calls the provider and never waits on a job.

Invariants enforced:
    - The auto-approval policy is evaluated before any transaction opens.
    - The resource spec is validated for the operation before anything is
      written.

Failure modes:
    - PolicyInputInvalidError / InvalidResourceSpecError on bad requests.
    - TicketNotFoundError / InvalidTicketStateError on decisions.
    - EventNotFoundError on stop or status lookups.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from shepherd_engines.approval import evaluate_auto_approval
from shepherd_engines.backoff import BackoffPolicy
from shepherd_kernel.db.engine import session_scope
from shepherd_kernel.domain.approval import ApprovalPolicy, Requester
from shepherd_kernel.domain.clock import Clock, SystemClock
from shepherd_kernel.domain.spec import ModifiedSpec, ResourceSpec, encode_payload
from shepherd_kernel.domain.types import (
    ApprovalTicket,
    DomainEvent,
    Job,
    Operation,
    SubmissionRequest,
    SubmissionResult,
    TicketStatus,
)
from shepherd_kernel.exceptions import InvalidResourceSpecError, PolicyInputInvalidError
from shepherd_kernel.logging_config import LogContext, get_logger
from shepherd_kernel.selectors.status_selector import StatusSelector
from shepherd_kernel.services.enqueuer import TransactionalEnqueuer
from shepherd_kernel.services.job_queue import JobQueue

logger = get_logger("services.governance")


@dataclass(frozen=True)
class RequestStatus:
    """Everything known about one request, read in one transaction."""

    event: DomainEvent
    ticket: ApprovalTicket
    job: Job | None
    outcomes: tuple[DomainEvent, ...]


class GovernanceService:
    """
    Usage:
        service = GovernanceService(session_factory, policy)
        result = service.submit(
            Requester("alice", frozenset({"developer"})),
            Operation.CREATE_VM,
            {"service_id": "billing", "cluster": "c1", "namespace": "dev",
             "template_id": "ubuntu-22", "cpu": 2, "memory_mb": 4096},
            reason="new billing worker",
        )
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: ApprovalPolicy | None = None,
        clock: Clock | None = None,
        conflict_attempts: int = 3,
        *,
        max_attempts: int = 5,
        backoff: BackoffPolicy | None = None,
    ):
        self._session_factory = session_factory
        self._policy = policy or ApprovalPolicy()
        self._clock = clock or SystemClock()
        self.enqueuer = TransactionalEnqueuer(
            session_factory,
            self._clock,
            max_attempts=max_attempts,
            conflict_attempts=conflict_attempts,
        )
        self.queue = JobQueue(
            session_factory,
            self._clock,
            backoff=backoff,
            conflict_attempts=conflict_attempts,
        )

    def submit(
        self,
        requester: Requester,
        operation: Operation | str,
        spec: ResourceSpec | Mapping[str, Any],
        reason: str,
        aggregate_id: str | None = None,
        priority: int = 1,
    ) -> SubmissionResult:
        """Validate, evaluate policy, and record the request.

        Returns as soon as the request is committed; execution is
        asynchronous.
        """
        resource = spec if isinstance(spec, ResourceSpec) else ResourceSpec.from_dict(spec)

        evaluation = evaluate_auto_approval(requester, operation, resource, self._policy)
        op = Operation(operation)
        resource.validate_for(op)

        if isinstance(priority, bool) or not isinstance(priority, int):
            raise PolicyInputInvalidError("priority", "must be an integer")

        # A named VM keys on its name from creation on; an unnamed create
        # gets a temporary id from the enqueuer.
        if op != Operation.CREATE_VM or resource.name:
            aggregate_id = aggregate_id or resource.name
            if aggregate_id != resource.name:
                raise InvalidResourceSpecError(
                    op.value, [f"aggregate id {aggregate_id!r} does not match VM name"],
                )

        request = SubmissionRequest(
            operation=op,
            aggregate_id=aggregate_id,
            payload=encode_payload(resource),
            requested_by=requester.requester_id,
            reason=reason,
            priority=priority,
            service_id=resource.service_id,
        )
        with LogContext.bind(actor=requester.requester_id):
            logger.info(
                "auto_approval_evaluated",
                extra={
                    "operation": op.value,
                    "decision": evaluation.decision.value,
                    "matched_rule": evaluation.matched_rule,
                },
            )
        return self.enqueuer.submit(
            request,
            requires_approval=evaluation.requires_approval,
            matched_rule=evaluation.matched_rule,
        )

    def approve(
        self,
        ticket_id: UUID,
        approver: str,
        modified_spec: ModifiedSpec | Mapping[str, Any] | None = None,
        reason: str = "",
    ) -> SubmissionResult:
        return self.enqueuer.approve_and_enqueue(ticket_id, approver, modified_spec, reason)

    def reject(self, ticket_id: UUID, actor: str, reason: str) -> ApprovalTicket:
        return self.enqueuer.reject(ticket_id, actor, reason)

    def cancel(self, ticket_id: UUID, actor: str, reason: str) -> ApprovalTicket:
        return self.enqueuer.cancel(ticket_id, actor, reason)

    def request_stop(self, event_id: UUID, actor: str = "system") -> RequestStatus:
        """Stop a request.

        Before approval this cancels the ticket.  Afterwards it is
        best-effort: a queued job is discarded, a running one is stopped
        before its provider call if the worker has not reached it yet.
        """
        status = self.get_status(event_id)
        if status.ticket.status == TicketStatus.PENDING_APPROVAL:
            self.enqueuer.cancel(status.ticket.ticket_id, actor, "stop requested")
        elif status.job is not None:
            self.queue.request_stop(status.job.job_id, actor)
        return self.get_status(event_id)

    def get_status(self, event_id: UUID) -> RequestStatus:
        with session_scope(self._session_factory) as session:
            selector = StatusSelector(session)
            event = selector.get_event(event_id)
            return RequestStatus(
                event=event,
                ticket=selector.get_ticket_for_event(event_id),
                job=selector.find_job_for_event(event_id),
                outcomes=tuple(selector.get_outcome_events(event_id)),
            )
