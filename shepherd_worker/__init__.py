"""Worker side of the pipeline: pools, executor, dispatcher, providers."""

from shepherd_worker.dispatcher import DispatchCycle, JobDispatcher
from shepherd_worker.executor import JobExecutor
from shepherd_worker.pool import PoolExhaustedError, SlotPool, WorkerPools

__all__ = [
    "DispatchCycle",
    "JobDispatcher",
    "JobExecutor",
    "PoolExhaustedError",
    "SlotPool",
    "WorkerPools",
]
