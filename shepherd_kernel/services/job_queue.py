"""
JobQueue -- the durable queue living in the same store as the event log.

Responsibility:
    Insert jobs inside authorizing transactions, lease available jobs to
    workers, reclaim expired leases, promote due retries, and handle stop
    requests.

Architecture position:
    Kernel > Services -- coordinating service.  Owns its transactions via
    run_in_transaction, except ``insert_job`` which runs inside the
    enqueuer's transaction.

Invariants enforced:
    - A job is claimed with a conditional UPDATE (state, attempt and the
      absence of a running job for the same aggregate are all re-checked in
      the WHERE clause).  Only a rowcount of 1 counts as a lease.
    - Same-aggregate serialization: on PostgreSQL a transaction-scoped
      advisory lock on the aggregate id guards the claim; on SQLite the
      whole lease transaction is BEGIN IMMEDIATE.
    - A reclaimed lease whose attempt budget is spent is discarded and its
      event failed, so a crashing job cannot loop forever.

Failure modes:
    - TransactionConflictError when contention outlasts the retry budget.
    - JobNotFoundError from request_stop() for an unknown job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select, text, update
from sqlalchemy.orm import Session, aliased

from shepherd_engines.backoff import BackoffPolicy
from shepherd_kernel.db.engine import is_postgres, run_in_transaction
from shepherd_kernel.domain.clock import Clock
from shepherd_kernel.domain.lifecycle import TERMINAL_JOB_STATES, ensure_transition
from shepherd_kernel.domain.types import Job, JobState, LeasedJob, Operation
from shepherd_kernel.exceptions import JobNotFoundError
from shepherd_kernel.logging_config import get_logger
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.services.outcome_recorder import OutcomeRecorder

logger = get_logger("services.job_queue")


@dataclass(frozen=True)
class MaintenanceResult:
    reclaimed: int = 0
    discarded: int = 0
    promoted: int = 0


def insert_job(
    session: Session,
    *,
    event_id: UUID,
    operation: Operation,
    aggregate_id: str,
    priority: int,
    max_attempts: int,
    now: datetime,
) -> JobModel:
    """Insert an available job.  Only ever called inside the authorizing transaction."""
    job = JobModel(
        id=uuid4(),
        event_id=event_id,
        operation=operation.value,
        aggregate_id=aggregate_id,
        priority=priority,
        state=JobState.AVAILABLE.value,
        attempt=0,
        max_attempts=max_attempts,
        scheduled_at=now,
        created_at=now,
    )
    session.add(job)
    session.flush()
    logger.info(
        "job_enqueued",
        extra={
            "job_id": str(job.id),
            "event_id": str(event_id),
            "operation": operation.value,
            "aggregate_id": aggregate_id,
            "priority": priority,
        },
    )
    return job


class JobQueue:
    """
    Contract:
        Every public method is one (retried) transaction.  No method calls
        the provider.
    """

    # Candidates fetched per free slot; extra rows cover same-aggregate skips.
    CANDIDATE_FACTOR = 4

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        *,
        lease_seconds: float = 300.0,
        backoff: BackoffPolicy | None = None,
        conflict_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._lease_seconds = lease_seconds
        self._backoff = backoff or BackoffPolicy()
        self._conflict_attempts = conflict_attempts

    def _run(self, work, operation: str):
        return run_in_transaction(
            self._session_factory,
            work,
            operation=operation,
            max_attempts=self._conflict_attempts,
        )

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    def lease(self, worker_id: str, limit: int) -> list[LeasedJob]:
        """Lease up to ``limit`` available jobs, priority first then scheduled_at."""
        if limit <= 0:
            return []

        def work(session: Session) -> list[LeasedJob]:
            now = self._clock.now()
            running = aliased(JobModel)
            busy = (
                select(running.id)
                .where(
                    running.aggregate_id == JobModel.aggregate_id,
                    running.state == JobState.RUNNING.value,
                )
                .exists()
            )
            candidates = session.execute(
                select(
                    JobModel.id,
                    JobModel.event_id,
                    JobModel.operation,
                    JobModel.aggregate_id,
                    JobModel.attempt,
                    JobModel.max_attempts,
                    JobModel.stop_requested,
                )
                .where(
                    JobModel.state == JobState.AVAILABLE.value,
                    JobModel.scheduled_at <= now,
                    ~busy,
                )
                .order_by(JobModel.priority, JobModel.scheduled_at, JobModel.created_at)
                .limit(limit * self.CANDIDATE_FACTOR)
            ).all()

            leased: list[LeasedJob] = []
            claimed_aggregates: set[str] = set()
            for cand in candidates:
                if len(leased) >= limit:
                    break
                if cand.aggregate_id in claimed_aggregates:
                    continue
                token = uuid4()
                expires_at = now + timedelta(seconds=self._lease_seconds)
                if not self._claim(session, cand, worker_id, token, now, expires_at):
                    continue
                claimed_aggregates.add(cand.aggregate_id)
                leased.append(
                    LeasedJob(
                        job_id=cand.id,
                        event_id=cand.event_id,
                        operation=Operation(cand.operation),
                        aggregate_id=cand.aggregate_id,
                        attempt=cand.attempt + 1,
                        max_attempts=cand.max_attempts,
                        worker_id=worker_id,
                        lease_token=token,
                        lease_expires_at=expires_at,
                        stop_requested=cand.stop_requested,
                    )
                )
            return leased

        leased = self._run(work, "lease_jobs")
        for job in leased:
            logger.info(
                "job_leased",
                extra={
                    "job_id": str(job.job_id),
                    "aggregate_id": job.aggregate_id,
                    "attempt": job.attempt,
                    "worker_id": worker_id,
                },
            )
        return leased

    def _claim(self, session, cand, worker_id, token, now, expires_at) -> bool:
        if is_postgres(session):
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": cand.aggregate_id},
            )

        other = aliased(JobModel)
        aggregate_busy = (
            select(other.id)
            .where(
                other.aggregate_id == cand.aggregate_id,
                other.state == JobState.RUNNING.value,
            )
            .exists()
        )
        result = session.execute(
            update(JobModel)
            .where(
                JobModel.id == cand.id,
                JobModel.state == JobState.AVAILABLE.value,
                JobModel.attempt == cand.attempt,
                ~aggregate_busy,
            )
            .values(
                state=JobState.RUNNING.value,
                attempt=JobModel.attempt + 1,
                lease_owner=worker_id,
                lease_token=token,
                leased_at=now,
                lease_expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reclaim_expired_leases(self) -> tuple[int, int]:
        """Return running jobs with expired leases to the queue.

        Returns:
            (reclaimed, discarded) counts.
        """

        def work(session: Session) -> tuple[int, int]:
            now = self._clock.now()
            stmt = (
                select(JobModel)
                .where(
                    JobModel.state == JobState.RUNNING.value,
                    JobModel.lease_expires_at < now,
                )
                .order_by(JobModel.lease_expires_at)
            )
            if is_postgres(session):
                stmt = stmt.with_for_update(skip_locked=True)
            expired = session.execute(stmt).scalars().all()

            recorder = OutcomeRecorder(session, self._clock, self._backoff)
            reclaimed = discarded = 0
            for job in expired:
                previous_owner = job.lease_owner
                if job.attempt >= job.max_attempts:
                    event = recorder.events.get(job.event_id, for_update=True)
                    recorder.discard(
                        job,
                        event,
                        "LEASE_EXPIRED",
                        f"lease held by {previous_owner} expired on the final attempt",
                        "system:reclaimer",
                    )
                    discarded += 1
                else:
                    ensure_transition(JobState.RUNNING, JobState.AVAILABLE)
                    job.state = JobState.AVAILABLE.value
                    job.scheduled_at = now
                    job.lease_owner = None
                    job.lease_token = None
                    job.leased_at = None
                    job.lease_expires_at = None
                    job.last_error_code = "LEASE_EXPIRED"
                    job.last_error = f"lease held by {previous_owner} expired"
                    reclaimed += 1
                logger.warning(
                    "lease_reclaimed",
                    extra={
                        "job_id": str(job.id),
                        "previous_owner": previous_owner,
                        "attempt": job.attempt,
                        "job_state": job.state,
                    },
                )
            session.flush()
            return reclaimed, discarded

        return self._run(work, "reclaim_expired_leases")

    def promote_due_retries(self) -> int:
        """Move retryable jobs whose backoff has elapsed back to available."""

        def work(session: Session) -> int:
            now = self._clock.now()
            ensure_transition(JobState.RETRYABLE, JobState.AVAILABLE)
            result = session.execute(
                update(JobModel)
                .where(
                    JobModel.state == JobState.RETRYABLE.value,
                    JobModel.scheduled_at <= now,
                )
                .values(state=JobState.AVAILABLE.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        promoted = self._run(work, "promote_due_retries")
        if promoted:
            logger.info("retries_promoted", extra={"count": promoted})
        return promoted

    def run_maintenance(self) -> MaintenanceResult:
        reclaimed, discarded = self.reclaim_expired_leases()
        promoted = self.promote_due_retries()
        return MaintenanceResult(reclaimed=reclaimed, discarded=discarded, promoted=promoted)

    # ------------------------------------------------------------------
    # Stop requests
    # ------------------------------------------------------------------

    def request_stop(self, job_id: UUID, actor: str = "system") -> Job:
        """Flag a job to stop.

        Available and retryable jobs are discarded at once and their event
        failed.  A running job keeps running until the worker checks the flag
        before its provider call; an in-flight call is not interrupted.
        Terminal jobs are returned unchanged.
        """

        def work(session: Session) -> Job:
            job = session.execute(
                select(JobModel).where(JobModel.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if job is None:
                raise JobNotFoundError(str(job_id))

            state = JobState(job.state)
            if state in TERMINAL_JOB_STATES:
                return job.to_dto()

            job.stop_requested = True
            if state in (JobState.AVAILABLE, JobState.RETRYABLE):
                recorder = OutcomeRecorder(session, self._clock, self._backoff)
                event = recorder.events.get(job.event_id, for_update=True)
                recorder.discard(
                    job, event, "STOP_REQUESTED", f"stopped by {actor}", actor,
                )
            session.flush()
            return job.to_dto()

        job = self._run(work, "request_stop")
        logger.info(
            "job_stop_requested",
            extra={"job_id": str(job_id), "job_state": job.state.value, "actor": actor},
        )
        return job

    def is_stop_requested(self, job_id: UUID) -> bool:
        def work(session: Session) -> bool:
            flag = session.execute(
                select(JobModel.stop_requested).where(JobModel.id == job_id)
            ).scalar_one_or_none()
            if flag is None:
                raise JobNotFoundError(str(job_id))
            return flag

        return self._run(work, "check_stop_requested")
