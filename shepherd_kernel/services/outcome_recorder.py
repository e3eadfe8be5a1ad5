"""
OutcomeRecorder -- reconcile a job attempt back into the store.

Responsibility:
    Turn the result of one provider call into job and event state:
    completed, retryable (with backoff) or discarded, plus the outcome event
    that closes the request.

Architecture position:
    Kernel > Services -- session-scoped, flush only.  Called by the worker
    executor inside its outcome transaction, and by JobQueue when a job is
    discarded without running (stop request, exhausted lease reclaim).

Invariants enforced:
    - A report is accepted only from the worker holding the current lease
      token; anything else raises LeaseExpiredError and writes nothing.
    - A transient failure on the last permitted attempt discards the job;
      retries always terminate.
    - Job and event transitions are validated against domain.lifecycle.

Failure modes:
    - JobNotFoundError if the job row is gone.
    - LeaseExpiredError if the lease was reclaimed or the job already
      resolved.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from shepherd_engines.backoff import BackoffPolicy, next_attempt_at
from shepherd_kernel.domain.clock import Clock
from shepherd_kernel.domain.lifecycle import ensure_transition
from shepherd_kernel.domain.types import (
    EventStatus,
    JobOutcome,
    JobState,
    LeasedJob,
    OutcomeKind,
    RecordedOutcome,
)
from shepherd_kernel.exceptions import JobNotFoundError, LeaseExpiredError
from shepherd_kernel.logging_config import get_logger
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.services.base import BaseService
from shepherd_kernel.services.event_log import EventLog

logger = get_logger("services.outcome_recorder")


class OutcomeRecorder(BaseService):
    """
    Contract:
        ``record()`` is called in a fresh transaction after the provider
        call returned.  Never called while a provider call is in flight.

    Usage:
        with session_scope(factory) as session:
            recorder = OutcomeRecorder(session, clock, backoff)
            recorded = recorder.record(leased, outcome)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        backoff: BackoffPolicy | None = None,
    ):
        super().__init__(session, clock)
        self.backoff = backoff or BackoffPolicy()
        self.events = EventLog(session, clock)

    def record(self, leased: LeasedJob, outcome: JobOutcome) -> RecordedOutcome:
        job = self._get_job(leased)
        if (
            job.state != JobState.RUNNING.value
            or job.lease_token != leased.lease_token
        ):
            logger.warning(
                "stale_lease_report_dropped",
                extra={
                    "job_id": str(job.id),
                    "worker_id": leased.worker_id,
                    "job_state": job.state,
                    "lease_owner": job.lease_owner,
                },
            )
            raise LeaseExpiredError(str(job.id), leased.worker_id)

        event = self.events.get(job.event_id, for_update=True)
        actor = f"worker:{leased.worker_id}"

        if outcome.kind == OutcomeKind.SUCCEEDED:
            return self._complete(job, event, outcome, actor)

        code = outcome.error_code or outcome.kind.value.upper()
        message = outcome.error_message or ""
        if outcome.kind == OutcomeKind.TRANSIENT_FAILURE and job.attempt < job.max_attempts:
            return self._schedule_retry(job, event, code, message)

        if outcome.kind == OutcomeKind.TRANSIENT_FAILURE:
            message = f"retries exhausted after {job.attempt} attempt(s): {message}"
            code = "RETRIES_EXHAUSTED" if not outcome.error_code else outcome.error_code
        outcome_event = self.discard(
            job, event, code, message, actor, observed_state=outcome.observed_state,
        )
        return RecordedOutcome(
            job_id=job.id,
            event_id=event.id,
            job_state=JobState.DISCARDED,
            event_status=EventStatus.FAILED,
            attempt=job.attempt,
            outcome_event_id=outcome_event.id,
        )

    def discard(
        self,
        job: JobModel,
        event: EventModel,
        error_code: str,
        message: str,
        actor: str,
        observed_state: dict | None = None,
    ) -> EventModel:
        """Discard ``job`` and fail its event.  Returns the *_FAILED outcome event."""
        self._transition_job(job, JobState.DISCARDED)
        job.last_error_code = error_code
        job.last_error = message
        job.finished_at = self.clock.now()
        self._release_lease(job)
        self.session.flush()

        outcome_event = self.events.fail(event, error_code, message, actor, observed_state)
        logger.warning(
            "job_discarded",
            extra={
                "job_id": str(job.id),
                "event_id": str(event.id),
                "attempt": job.attempt,
                "error_code": error_code,
            },
        )
        return outcome_event

    # ------------------------------------------------------------------

    def _complete(self, job, event, outcome, actor) -> RecordedOutcome:
        self._transition_job(job, JobState.COMPLETED)
        job.finished_at = self.clock.now()
        job.last_error_code = None
        job.last_error = None
        self._release_lease(job)
        self.session.flush()

        outcome_event = self.events.complete(event, outcome.observed_state, actor)
        logger.info(
            "job_completed",
            extra={
                "job_id": str(job.id),
                "event_id": str(event.id),
                "attempt": job.attempt,
            },
        )
        return RecordedOutcome(
            job_id=job.id,
            event_id=event.id,
            job_state=JobState.COMPLETED,
            event_status=EventStatus.COMPLETED,
            attempt=job.attempt,
            outcome_event_id=outcome_event.id,
        )

    def _schedule_retry(self, job, event, code, message) -> RecordedOutcome:
        retry_at = next_attempt_at(self.clock.now(), job.attempt, self.backoff)
        self._transition_job(job, JobState.RETRYABLE)
        job.scheduled_at = retry_at
        job.last_error_code = code
        job.last_error = message
        job.lease_owner = None
        self._release_lease(job)
        self.session.flush()

        logger.info(
            "job_retry_scheduled",
            extra={
                "job_id": str(job.id),
                "event_id": str(event.id),
                "attempt": job.attempt,
                "max_attempts": job.max_attempts,
                "next_attempt_at": retry_at,
                "error_code": code,
            },
        )
        return RecordedOutcome(
            job_id=job.id,
            event_id=event.id,
            job_state=JobState.RETRYABLE,
            event_status=EventStatus(event.status),
            attempt=job.attempt,
            next_attempt_at=retry_at,
        )

    def _get_job(self, leased: LeasedJob) -> JobModel:
        job = self.session.execute(
            select(JobModel).where(JobModel.id == leased.job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(leased.job_id))
        return job

    def _transition_job(self, job: JobModel, target: JobState) -> None:
        ensure_transition(JobState(job.state), target)
        job.state = target.value

    @staticmethod
    def _release_lease(job: JobModel) -> None:
        job.lease_token = None
        job.lease_expires_at = None
