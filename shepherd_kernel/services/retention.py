"""
RetentionService -- keep the store bounded without losing the audit record.

Events are soft-archived (``archived_at``), never deleted.  Finished job
rows are pruned; the event row and its outcome events stay as the record of
what happened.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from shepherd_kernel.db.engine import run_in_transaction
from shepherd_kernel.domain.clock import Clock
from shepherd_kernel.domain.lifecycle import TERMINAL_EVENT_STATUSES, TERMINAL_JOB_STATES
from shepherd_kernel.logging_config import get_logger
from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel

logger = get_logger("services.retention")


class RetentionService:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        *,
        conflict_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._conflict_attempts = conflict_attempts

    def archive_terminal_events(self, older_than: timedelta) -> int:
        """Stamp ``archived_at`` on terminal events created before now - older_than."""
        now = self._clock.now()
        cutoff = now - older_than

        def work(session: Session) -> int:
            result = session.execute(
                update(EventModel)
                .where(
                    EventModel.status.in_([s.value for s in TERMINAL_EVENT_STATUSES]),
                    EventModel.created_at < cutoff,
                    EventModel.archived_at.is_(None),
                )
                .values(archived_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        archived = run_in_transaction(
            self._session_factory, work,
            operation="archive_terminal_events",
            max_attempts=self._conflict_attempts,
        )
        logger.info("events_archived", extra={"count": archived, "cutoff": cutoff})
        return archived

    def prune_finished_jobs(self, older_than: timedelta) -> int:
        """Delete completed/discarded jobs finished before now - older_than."""
        cutoff = self._clock.now() - older_than

        def work(session: Session) -> int:
            result = session.execute(
                delete(JobModel)
                .where(
                    JobModel.state.in_([s.value for s in TERMINAL_JOB_STATES]),
                    JobModel.finished_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        pruned = run_in_transaction(
            self._session_factory, work,
            operation="prune_finished_jobs",
            max_attempts=self._conflict_attempts,
        )
        logger.info("jobs_pruned", extra={"count": pruned, "cutoff": cutoff})
        return pruned
