"""
shepherd_worker.provider.base -- The infrastructure provider boundary.

Responsibility:
    Define what the worker may ask of a cluster API and what it gets back.
    The provider is opaque: given a target and an effective spec it attempts
    one mutation and reports success, a transient failure or a permanent
    failure, with the observed state.

Architecture position:
    Worker > Provider.  Imports domain types only.  Never touches the
    database; always called outside a transaction.

Invariants enforced:
    - Closed dispatch: ``execute_operation`` maps each Operation to exactly
      one provider method.  An operation missing from the table is a
      programming error, not a provider failure.
    - Provider methods must be idempotent in effect; the pipeline delivers
      at least once.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from shepherd_kernel.domain.spec import ResourceSpec
from shepherd_kernel.domain.types import Operation


class ResultStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class ProviderResult:
    status: ResultStatus
    observed_state: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def success(cls, observed_state: dict[str, Any] | None = None) -> ProviderResult:
        return cls(ResultStatus.SUCCESS, observed_state or {})

    @classmethod
    def transient(cls, code: str, message: str, observed_state=None) -> ProviderResult:
        return cls(ResultStatus.TRANSIENT_FAILURE, observed_state or {}, code, message)

    @classmethod
    def permanent(cls, code: str, message: str, observed_state=None) -> ProviderResult:
        return cls(ResultStatus.PERMANENT_FAILURE, observed_state or {}, code, message)


@dataclass(frozen=True)
class ProviderTarget:
    """Where a mutation lands."""

    cluster: str
    namespace: str
    name: str


@dataclass(frozen=True)
class CallContext:
    """Per-call metadata handed to the provider.

    ``cancel_event`` belongs to this call alone and is set when the worker
    stops waiting for it (its timeout passed).  ``shutdown_event`` is shared
    by every call of one worker and is set when the worker stops.  Providers
    that can abort early should poll ``cancelled``; the worker never kills a
    call.
    """

    job_id: UUID
    attempt: int
    timeout_seconds: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    shutdown_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set() or self.shutdown_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()


@runtime_checkable
class InfrastructureProvider(Protocol):
    name: str

    def create_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...

    def modify_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...

    def delete_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...

    def start_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...

    def stop_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...

    def restart_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        ...


OPERATION_METHODS: dict[Operation, str] = {
    Operation.CREATE_VM: "create_vm",
    Operation.MODIFY_VM: "modify_vm",
    Operation.DELETE_VM: "delete_vm",
    Operation.START_VM: "start_vm",
    Operation.STOP_VM: "stop_vm",
    Operation.RESTART_VM: "restart_vm",
}


def target_for(spec: ResourceSpec, aggregate_id: str) -> ProviderTarget:
    """Build the provider target.  A VM being created is named by its aggregate id
    unless the request named it explicitly."""
    return ProviderTarget(
        cluster=spec.cluster or "",
        namespace=spec.namespace or "",
        name=spec.name or aggregate_id,
    )


def execute_operation(
    provider: InfrastructureProvider,
    operation: Operation,
    spec: ResourceSpec,
    target: ProviderTarget,
    call: CallContext,
) -> ProviderResult:
    method = getattr(provider, OPERATION_METHODS[operation])
    return method(target, spec, call)
