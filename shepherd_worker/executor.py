"""
shepherd_worker.executor -- Execute one leased job.

Responsibility:
    Three phases per job, never overlapping:
      1. read    -- short read transaction: resolve the effective spec and
                    check the stop flag.
      2. provider call -- no transaction open; runs in the provider pool with
                    an explicit timeout.
      3. outcome -- new transaction: OutcomeRecorder writes job + event state.

Architecture position:
    Worker.  Called inside a general-pool slot by the dispatcher.

Invariants enforced:
    - No database transaction is open while the provider is called.
    - Any exception in the read phase, out of the provider (including a
      timeout) or in mapping its result becomes a failure outcome for this
      job only; it never escapes to the dispatcher.
    - A timed-out call is cancelled and then waited for, up to the end of
      the lease, before the outcome is recorded.  The job stays running
      meanwhile, so no other job on the same aggregate can be leased while
      the abandoned call may still touch the VM.
    - A report on a lease this worker no longer holds is dropped.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from shepherd_engines.backoff import BackoffPolicy
from shepherd_kernel.db.engine import run_in_transaction
from shepherd_kernel.domain.clock import Clock
from shepherd_kernel.domain.spec import ResourceSpec, get_effective_spec
from shepherd_kernel.domain.types import (
    JobOutcome,
    LeasedJob,
    OutcomeKind,
    RecordedOutcome,
)
from shepherd_kernel.exceptions import (
    EffectiveSpecError,
    InvalidResourceSpecError,
    JobNotFoundError,
    LeaseExpiredError,
    ProviderPermanentError,
    ProviderTransientError,
)
from shepherd_kernel.logging_config import LogContext, get_logger
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.models.ticket import ApprovalTicketModel
from shepherd_kernel.services.outcome_recorder import OutcomeRecorder
from shepherd_worker.pool import PoolExhaustedError, WorkerPools
from shepherd_worker.provider.base import (
    CallContext,
    InfrastructureProvider,
    ProviderResult,
    ResultStatus,
    execute_operation,
    target_for,
)

logger = get_logger("worker.executor")


@dataclass(frozen=True)
class WorkItem:
    spec: ResourceSpec
    stop_requested: bool


_RESULT_KINDS = {
    ResultStatus.SUCCESS: OutcomeKind.SUCCEEDED,
    ResultStatus.TRANSIENT_FAILURE: OutcomeKind.TRANSIENT_FAILURE,
    ResultStatus.PERMANENT_FAILURE: OutcomeKind.PERMANENT_FAILURE,
}


def unexpected_failure(exc: BaseException, context: str) -> JobOutcome:
    return JobOutcome(
        OutcomeKind.TRANSIENT_FAILURE,
        error_code="UNEXPECTED_ERROR",
        error_message=f"{context}: {type(exc).__name__}: {exc}",
    )


class JobExecutor:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: InfrastructureProvider,
        pools: WorkerPools,
        clock: Clock,
        *,
        provider_timeout: float = 60.0,
        backoff: BackoffPolicy | None = None,
        conflict_attempts: int = 3,
        shutdown_event: threading.Event | None = None,
    ):
        self._session_factory = session_factory
        self._provider = provider
        self._pools = pools
        self._clock = clock
        self._provider_timeout = provider_timeout
        self._backoff = backoff or BackoffPolicy()
        self._conflict_attempts = conflict_attempts
        self._shutdown_event = shutdown_event or threading.Event()

    def execute(self, leased: LeasedJob) -> RecordedOutcome | None:
        """Run one attempt end to end.  Returns None if the report was dropped."""
        with LogContext.bind_job(leased):
            outcome = self._prepare_and_call(leased)
            try:
                return self._report_or_drop(leased, outcome)
            except Exception as exc:
                # The outcome itself could not be written (e.g. an observed
                # state that does not serialize); record a plain retry instead.
                logger.exception("outcome_report_failed", extra={"outcome": outcome.kind.value})
                return self._report_or_drop(leased, unexpected_failure(exc, "outcome not recorded"))

    def report(self, leased: LeasedJob, outcome: JobOutcome) -> RecordedOutcome:
        """Outcome phase.  Raises LeaseExpiredError if the lease was reclaimed."""

        def work(session: Session) -> RecordedOutcome:
            return OutcomeRecorder(session, self._clock, self._backoff).record(leased, outcome)

        return run_in_transaction(
            self._session_factory,
            work,
            operation="record_outcome",
            max_attempts=self._conflict_attempts,
        )

    def _report_or_drop(self, leased: LeasedJob, outcome: JobOutcome) -> RecordedOutcome | None:
        try:
            return self.report(leased, outcome)
        except LeaseExpiredError:
            logger.warning("outcome_dropped_lease_lost", extra={"outcome": outcome.kind.value})
            return None

    # ------------------------------------------------------------------

    def _prepare_and_call(self, leased: LeasedJob) -> JobOutcome:
        try:
            item = self._read(leased)
        except (EffectiveSpecError, InvalidResourceSpecError) as exc:
            logger.error("effective_spec_unresolvable", extra={"error": str(exc)})
            return JobOutcome(OutcomeKind.PERMANENT_FAILURE, error_code=exc.code, error_message=str(exc))
        except Exception as exc:
            logger.exception("job_read_failed")
            return unexpected_failure(exc, "read phase failed")

        if item.stop_requested:
            logger.info("job_stopped_before_provider_call")
            return JobOutcome(
                OutcomeKind.PERMANENT_FAILURE,
                error_code="STOP_REQUESTED",
                error_message="stop requested before the provider call",
            )
        return self._call_provider(leased, item.spec)

    def _read(self, leased: LeasedJob) -> WorkItem:
        """Read phase: effective spec from payload + ticket override."""

        def work(session: Session) -> WorkItem:
            row = session.execute(
                select(JobModel.stop_requested, EventModel.payload, ApprovalTicketModel.modified_spec)
                .join(EventModel, EventModel.id == JobModel.event_id)
                .join(ApprovalTicketModel, ApprovalTicketModel.event_id == JobModel.event_id)
                .where(JobModel.id == leased.job_id)
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(str(leased.job_id))
            spec = get_effective_spec(row.payload, row.modified_spec)
            spec.validate_for(leased.operation)
            return WorkItem(spec=spec, stop_requested=row.stop_requested)

        return run_in_transaction(
            self._session_factory,
            work,
            operation="resolve_effective_spec",
            max_attempts=self._conflict_attempts,
        )

    def _call_provider(self, leased: LeasedJob, spec: ResourceSpec) -> JobOutcome:
        target = target_for(spec, leased.aggregate_id)
        call = CallContext(
            job_id=leased.job_id,
            attempt=leased.attempt,
            timeout_seconds=self._provider_timeout,
            shutdown_event=self._shutdown_event,
        )
        logger.info(
            "provider_call_started",
            extra={"target": target.name, "cluster": target.cluster},
        )
        try:
            future = self._pools.submit_provider_call(
                execute_operation,
                self._provider,
                leased.operation,
                spec,
                target,
                call,
                timeout=self._provider_timeout,
            )
        except PoolExhaustedError as exc:
            logger.warning("provider_pool_exhausted", extra={"timeout": exc.timeout})
            return JobOutcome(
                OutcomeKind.TRANSIENT_FAILURE,
                error_code="PROVIDER_POOL_EXHAUSTED",
                error_message=str(exc),
            )

        try:
            result = future.result(timeout=self._provider_timeout)
        except FuturesTimeoutError:
            call.cancel()
            logger.warning("provider_call_timed_out", extra={"timeout": self._provider_timeout})
            self._await_abandoned_call(leased, future)
            return JobOutcome(
                OutcomeKind.TRANSIENT_FAILURE,
                error_code="PROVIDER_TIMEOUT",
                error_message=f"provider call exceeded {self._provider_timeout}s",
            )
        except ProviderTransientError as exc:
            logger.warning("provider_transient_error", extra={"error": str(exc)})
            return JobOutcome(
                OutcomeKind.TRANSIENT_FAILURE,
                observed_state=exc.observed_state or {},
                error_code=exc.code,
                error_message=str(exc),
            )
        except ProviderPermanentError as exc:
            logger.error("provider_permanent_error", extra={"error": str(exc)})
            return JobOutcome(
                OutcomeKind.PERMANENT_FAILURE,
                observed_state=exc.observed_state or {},
                error_code=exc.code,
                error_message=str(exc),
            )
        except Exception as exc:
            # Unexpected faults are retried like transient ones
            logger.exception("provider_call_failed_unexpectedly")
            return unexpected_failure(exc, "provider call failed")

        return self._to_outcome(result)

    def _await_abandoned_call(self, leased: LeasedJob, future: Future) -> None:
        """Hold the job (and so its aggregate) until a timed-out call returns.

        Bounded by the lease: past it the job is reclaimable anyway.
        """
        if future.cancel():
            logger.info("provider_call_cancelled_before_start")
            return
        remaining = (leased.lease_expires_at - self._clock.now()).total_seconds()
        done, _ = wait_futures([future], timeout=max(remaining, 0.0))
        if not done:
            logger.error("provider_call_outlived_lease", extra={"lease_expires_at": leased.lease_expires_at})
            return
        exc = future.exception()
        logger.info(
            "abandoned_provider_call_returned",
            extra={"error": f"{type(exc).__name__}: {exc}" if exc is not None else None},
        )

    def _to_outcome(self, result: Any) -> JobOutcome:
        if (
            not isinstance(result, ProviderResult)
            or not isinstance(result.status, ResultStatus)
            or not isinstance(result.observed_state, dict)
        ):
            logger.error("provider_result_invalid", extra={"result": repr(result)})
            return JobOutcome(
                OutcomeKind.TRANSIENT_FAILURE,
                error_code="UNEXPECTED_ERROR",
                error_message=f"provider returned {result!r}",
            )

        logger.info(
            "provider_call_finished",
            extra={"status": result.status.value, "error_code": result.error_code},
        )
        return JobOutcome(
            kind=_RESULT_KINDS[result.status],
            observed_state=result.observed_state,
            error_code=result.error_code,
            error_message=result.error_message,
        )
