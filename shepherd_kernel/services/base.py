"""
BaseService -- base for session-scoped kernel services.

Session-scoped services (EventLog, OutcomeRecorder) receive the caller's
``Session`` and only ever ``flush()``.  The coordinating services
(TransactionalEnqueuer, JobQueue, RetentionService) own the transaction
through ``run_in_transaction`` and hand their session down.  That split is
what keeps "event + ticket + job" in one commit.
"""

from abc import ABC

from sqlalchemy.orm import Session

from shepherd_kernel.domain.clock import Clock


class BaseService(ABC):
    """
    Contract:
        Uses ``session.flush()`` within the caller's transaction.  Never
        commits or rolls back.
    """

    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock
