"""
Module: shepherd_kernel.models.job
Responsibility: ORM persistence for durable, leasable jobs.
Architecture position: Kernel > Models.

Invariants enforced:
    - At most one job per event (UNIQUE event_id).
    - Claim check: the row carries only routing columns (operation,
      aggregate_id, priority); the worker reads the event and ticket for the
      spec.
    - State values limited by a check constraint.  Transitions are written
      only by services.job_queue and services.outcome_recorder.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from shepherd_kernel.db.base import Base, UUIDString
from shepherd_kernel.domain.types import Job, JobState, Operation


class JobModel(Base):
    """A unit of provider work authorized by exactly one event."""

    __tablename__ = "jobs"

    __table_args__ = (
        CheckConstraint(
            "state IN ('available', 'running', 'completed', 'discarded', 'retryable')",
            name="ck_jobs_valid_state",
        ),
        CheckConstraint("attempt >= 0", name="ck_jobs_attempt_non_negative"),
        CheckConstraint("max_attempts > 0", name="ck_jobs_max_attempts_positive"),
        # Lease poll: state + priority + scheduled_at
        Index("idx_jobs_poll", "state", "priority", "scheduled_at"),
        # Same-aggregate serialization check
        Index("idx_jobs_aggregate_state", "aggregate_id", "state"),
        Index("idx_jobs_lease_expiry", "state", "lease_expires_at"),
    )

    event_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("events.id"),
        nullable=False,
        unique=True,
    )
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    state: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)

    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_token: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    leased_at: Mapped[datetime | None] = mapped_column(nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    stop_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Job {self.id} {self.operation}:{self.aggregate_id} "
            f"state={self.state} attempt={self.attempt}/{self.max_attempts}>"
        )

    def to_dto(self) -> Job:
        return Job(
            job_id=self.id,
            event_id=self.event_id,
            operation=Operation(self.operation),
            aggregate_id=self.aggregate_id,
            state=JobState(self.state),
            priority=self.priority,
            attempt=self.attempt,
            max_attempts=self.max_attempts,
            scheduled_at=self.scheduled_at,
            created_at=self.created_at,
            lease_owner=self.lease_owner,
            lease_token=self.lease_token,
            leased_at=self.leased_at,
            lease_expires_at=self.lease_expires_at,
            stop_requested=self.stop_requested,
            last_error_code=self.last_error_code,
            last_error=self.last_error,
            finished_at=self.finished_at,
        )
