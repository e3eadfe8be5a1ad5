"""
shepherd_worker.dispatcher -- The job dispatcher loop.

Responsibility:
    Poll the durable queue, lease as many jobs as there are free general
    slots, and hand each to the executor.  Before every poll, reclaim
    expired leases and promote due retries.

Architecture position:
    Worker.  Composes JobQueue (kernel), JobExecutor and WorkerPools.

Invariants enforced:
    - Never leases more jobs than there are free general-pool slots.
    - A failing job or a failing poll cycle is logged and the loop keeps
      running.
    - ``stop()`` signals cancellation to in-flight provider calls but does
      not kill them; it waits up to ``timeout`` for executions to finish.
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from shepherd_engines.backoff import BackoffPolicy
from shepherd_kernel.domain.clock import Clock, SystemClock
from shepherd_kernel.domain.types import Job
from shepherd_kernel.logging_config import LogContext, get_logger
from shepherd_kernel.services.job_queue import JobQueue, MaintenanceResult
from shepherd_worker.executor import JobExecutor
from shepherd_worker.pool import WorkerPools
from shepherd_worker.provider.base import InfrastructureProvider

logger = get_logger("worker.dispatcher")


@dataclass(frozen=True)
class DispatchCycle:
    """What one pass of the loop did."""

    maintenance: MaintenanceResult
    leased: int
    futures: tuple[Future, ...] = field(default=(), repr=False)


class JobDispatcher:
    """
    Usage:
        dispatcher = JobDispatcher(session_factory, InMemoryProvider())
        dispatcher.start()
        ...
        dispatcher.stop(timeout=30)

    Tests drive it one pass at a time with ``run_once(wait=True)``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: InfrastructureProvider,
        *,
        clock: Clock | None = None,
        pools: WorkerPools | None = None,
        worker_id: str | None = None,
        poll_interval: float = 1.0,
        lease_seconds: float = 300.0,
        provider_timeout: float = 60.0,
        backoff: BackoffPolicy | None = None,
        conflict_attempts: int = 3,
        general_pool_size: int = 100,
        provider_pool_size: int = 50,
    ):
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._clock = clock or SystemClock()
        self._poll_interval = poll_interval
        self.pools = pools or WorkerPools(general_pool_size, provider_pool_size)
        self._cancel = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._inflight: set[Future] = set()
        self._inflight_lock = threading.Lock()

        backoff = backoff or BackoffPolicy()
        self.queue = JobQueue(
            session_factory,
            self._clock,
            lease_seconds=lease_seconds,
            backoff=backoff,
            conflict_attempts=conflict_attempts,
        )
        self.executor = JobExecutor(
            session_factory,
            provider,
            self.pools,
            self._clock,
            provider_timeout=provider_timeout,
            backoff=backoff,
            conflict_attempts=conflict_attempts,
            shutdown_event=self._cancel,
        )

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    def run_once(self, wait: bool = False) -> DispatchCycle:
        """Maintenance, then lease up to the free general slots and submit.

        With ``wait=True`` returns only after every submitted job finished.
        """
        with LogContext.bind(worker_id=self.worker_id):
            maintenance = self.queue.run_maintenance()
            free = self.pools.general.free
            leased = self.queue.lease(self.worker_id, free) if free > 0 else []

            futures = []
            for job in leased:
                future = self.pools.submit(self.executor.execute, job)
                with self._inflight_lock:
                    self._inflight.add(future)
                future.add_done_callback(self._on_done)
                futures.append(future)

        if wait and futures:
            wait_futures(futures)
        return DispatchCycle(maintenance=maintenance, leased=len(leased), futures=tuple(futures))

    def _on_done(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "job_execution_failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"worker_id": self.worker_id},
            )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._cancel.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"shepherd-dispatcher-{self.worker_id}", daemon=True,
        )
        self._thread.start()
        logger.info("dispatcher_started", extra={"worker_id": self.worker_id})

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("dispatch_cycle_failed", extra={"worker_id": self.worker_id})
            self._stopping.wait(self._poll_interval)

    def stop(self, timeout: float = 30.0) -> bool:
        """Stop polling, signal cancellation, wait for in-flight jobs.

        Returns True if every in-flight job finished within ``timeout``.
        """
        self._stopping.set()
        self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        with self._inflight_lock:
            pending = list(self._inflight)
        done, not_done = wait_futures(pending, timeout=timeout) if pending else (set(), set())
        self.pools.shutdown(wait=not not_done)
        logger.info(
            "dispatcher_stopped",
            extra={
                "worker_id": self.worker_id,
                "finished": len(done),
                "abandoned": len(not_done),
            },
        )
        return not not_done

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Control and observability
    # ------------------------------------------------------------------

    def request_stop(self, job_id: UUID, actor: str = "system") -> Job:
        return self.queue.request_stop(job_id, actor)

    def metrics(self) -> dict[str, Any]:
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {**self.pools.metrics(), "inflight_jobs": inflight, "worker_id": self.worker_id}
