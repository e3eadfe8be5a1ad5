"""
shepherd_worker.pool -- Bounded worker pools.

Responsibility:
    Bound how many jobs run at once (general pool) and, separately, how many
    provider calls are in flight (provider pool).  No code in the worker
    starts a thread except through these pools.

Invariants enforced:
    - Every slot acquired is released exactly once: acquisition happens in
      ``submit`` / ``submit_provider_call`` and release in the ``finally`` of the
      wrapped callable, so success, failure and unexpected exceptions all
      free the slot.
    - A slot is released if handing work to the executor itself fails, or
      if the future is cancelled before it starts.
    - ``running + free == cap`` at all times.
    - Work runs under the submitting thread's LogContext.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from shepherd_kernel.exceptions import ConcurrencyError
from shepherd_kernel.logging_config import LogContext, get_logger

logger = get_logger("worker.pool")

T = TypeVar("T")


class PoolExhaustedError(ConcurrencyError):
    """No slot became free within the acquire timeout."""

    code: str = "POOL_EXHAUSTED"

    def __init__(self, pool: str, timeout: float | None):
        self.pool = pool
        self.timeout = timeout
        super().__init__(f"No free slot in {pool} pool within {timeout}s")


class SlotPool:
    """Counting semaphore with observable occupancy."""

    def __init__(self, name: str, size: int):
        if size <= 0:
            raise ValueError(f"{name} pool size must be positive, got {size}")
        self.name = name
        self._cap = size
        self._semaphore = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._running = 0

    @property
    def cap(self) -> int:
        return self._cap

    @property
    def running(self) -> int:
        with self._lock:
            return self._running

    @property
    def free(self) -> int:
        with self._lock:
            return self._cap - self._running

    def acquire(self, timeout: float | None = None) -> None:
        if not self._semaphore.acquire(timeout=timeout):
            raise PoolExhaustedError(self.name, timeout)
        with self._lock:
            self._running += 1

    def release(self) -> None:
        with self._lock:
            self._running -= 1
        self._semaphore.release()

    @contextmanager
    def slot(self, timeout: float | None = None) -> Iterator[None]:
        self.acquire(timeout)
        try:
            yield
        finally:
            self.release()

    def metrics(self) -> dict[str, int]:
        with self._lock:
            running = self._running
        return {"running": running, "free": self._cap - running, "cap": self._cap}


class WorkerPools:
    """
    General pool for job executions, provider pool for provider calls.

    Usage:
        pools = WorkerPools(general_size=100, provider_size=50)
        future = pools.submit(executor.execute, leased_job)
        pools.shutdown()
    """

    def __init__(self, general_size: int = 100, provider_size: int = 50):
        if provider_size > general_size:
            raise ValueError("provider pool cannot be larger than the general pool")
        self.general = SlotPool("general", general_size)
        self.provider = SlotPool("provider", provider_size)
        self._general_executor = ThreadPoolExecutor(
            max_workers=general_size, thread_name_prefix="shepherd-general",
        )
        self._provider_executor = ThreadPoolExecutor(
            max_workers=provider_size, thread_name_prefix="shepherd-provider",
        )

    def submit(self, fn: Callable[..., T], *args: Any, timeout: float | None = None) -> Future:
        """Run ``fn`` in a general-pool slot."""
        return self._submit(self.general, self._general_executor, fn, args, timeout)

    def submit_provider_call(
        self, fn: Callable[..., T], *args: Any, timeout: float | None = None,
    ) -> Future:
        """Run ``fn`` in a provider-pool slot.

        The slot is held until ``fn`` actually returns, even if the caller
        stops waiting on the future, so abandoned calls still count against
        the provider bound.
        """
        return self._submit(self.provider, self._provider_executor, fn, args, timeout)

    @staticmethod
    def _submit(pool: SlotPool, executor: ThreadPoolExecutor, fn, args, timeout) -> Future:
        call = LogContext.carry(fn)
        pool.acquire(timeout)

        def run():
            try:
                return call(*args)
            finally:
                pool.release()

        try:
            future = executor.submit(run)
        except BaseException:
            pool.release()
            raise
        # A cancelled future never runs ``run``, so its slot is freed here
        future.add_done_callback(lambda f: pool.release() if f.cancelled() else None)
        return future

    def metrics(self) -> dict[str, dict[str, int]]:
        return {
            "general": self.general.metrics(),
            "provider": self.provider.metrics(),
        }

    def shutdown(self, wait: bool = True) -> None:
        self._general_executor.shutdown(wait=wait)
        self._provider_executor.shutdown(wait=wait)
        logger.info("worker_pools_shutdown", extra={"metrics": self.metrics()})
