"""Kernel services: event log, enqueuer, job queue, outcomes, retention."""

from shepherd_kernel.services.enqueuer import TransactionalEnqueuer
from shepherd_kernel.services.event_log import EventLog
from shepherd_kernel.services.job_queue import JobQueue, MaintenanceResult, insert_job
from shepherd_kernel.services.outcome_recorder import OutcomeRecorder
from shepherd_kernel.services.retention import RetentionService

__all__ = [
    "EventLog",
    "JobQueue",
    "MaintenanceResult",
    "OutcomeRecorder",
    "RetentionService",
    "TransactionalEnqueuer",
    "insert_job",
]
