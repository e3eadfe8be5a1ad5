"""
Tests for the bounded worker pools.

Covers:
- Slots are released on success, failure and cancellation
- running + free == cap under load
- PoolExhaustedError when no slot frees up in time
- Pool sizing rules
"""

import threading
from concurrent.futures import ThreadPoolExecutor, wait

import pytest

from shepherd_worker.pool import PoolExhaustedError, SlotPool, WorkerPools


class Boom(Exception):
    pass


class TestSlotPool:

    def test_slot_context_releases(self):
        pool = SlotPool("general", 2)
        with pool.slot():
            assert pool.running == 1
            assert pool.free == 1
        assert pool.metrics() == {"running": 0, "free": 2, "cap": 2}

    def test_slot_released_on_exception(self):
        pool = SlotPool("general", 1)
        with pytest.raises(Boom):
            with pool.slot():
                raise Boom()
        assert pool.running == 0

    def test_exhausted(self):
        pool = SlotPool("provider", 1)
        pool.acquire()
        with pytest.raises(PoolExhaustedError) as exc_info:
            pool.acquire(timeout=0.01)
        assert exc_info.value.pool == "provider"
        assert exc_info.value.code == "POOL_EXHAUSTED"
        # Distinct from a provider call timing out
        assert not isinstance(exc_info.value, TimeoutError)
        pool.release()
        assert pool.free == 1

    @pytest.mark.parametrize("size", [0, -1])
    def test_size_must_be_positive(self, size):
        with pytest.raises(ValueError):
            SlotPool("general", size)


class TestWorkerPools:

    def test_provider_pool_cannot_exceed_general(self):
        with pytest.raises(ValueError):
            WorkerPools(general_size=4, provider_size=8)

    @pytest.mark.slow
    def test_no_slot_leak_under_mixed_failures(self):
        pools = WorkerPools(general_size=16, provider_size=8)

        def work(n):
            if n % 3 == 0:
                raise Boom(n)
            if n % 7 == 0:
                raise RuntimeError(n)
            return n

        try:
            general = [pools.submit(work, n) for n in range(10_000)]
            provider = [pools.submit_provider_call(work, n) for n in range(2_000)]
            wait(general + provider)
        finally:
            pools.shutdown()

        failures = sum(1 for f in general if f.exception() is not None)
        assert failures == sum(1 for n in range(10_000) if n % 3 == 0 or n % 7 == 0)
        assert pools.metrics() == {
            "general": {"running": 0, "free": 16, "cap": 16},
            "provider": {"running": 0, "free": 8, "cap": 8},
        }

    def test_occupancy_never_exceeds_cap(self):
        pools = WorkerPools(general_size=3, provider_size=1)
        lock = threading.Lock()
        active = 0
        peak = 0
        release = threading.Event()

        def work():
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            release.wait(5)
            with lock:
                active -= 1

        try:
            futures = [pools.submit(work) for _ in range(3)]
            assert pools.general.free == 0
            with pytest.raises(PoolExhaustedError):
                pools.submit(work, timeout=0.01)
            release.set()
            futures.append(pools.submit(work))
            wait(futures)
        finally:
            pools.shutdown()

        assert peak <= 3
        assert pools.general.running == 0

    def test_cancelled_future_frees_slot(self):
        # Executor narrower than the slot pool so the second call queues
        pool = SlotPool("provider", 2)
        executor = ThreadPoolExecutor(max_workers=1)
        gate = threading.Event()
        try:
            blocker = WorkerPools._submit(pool, executor, gate.wait, (5,), None)
            queued = WorkerPools._submit(pool, executor, lambda: None, (), None)
            assert pool.running == 2

            assert queued.cancel()
            assert pool.running == 1

            gate.set()
            wait([blocker])
        finally:
            executor.shutdown()
        assert pool.running == 0
