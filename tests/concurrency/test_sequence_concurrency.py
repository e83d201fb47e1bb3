"""
Document number allocation under concurrency.

Verifies:
- N concurrent allocations on one key yield exactly {1..N}
- Keys (scope, period) are independent
- A rolled-back allocation is not consumed
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from pos_kernel.db.engine import session_scope
from pos_kernel.services.sequence_service import SequenceService

pytestmark = pytest.mark.slow_locks

WORKERS = 8


def allocate(scope: str, period: int) -> int:
    with session_scope() as s:
        return SequenceService(s).next(scope, period)


class TestSequenceAllocation:
    def test_first_value_is_one(self, db_engine):
        assert allocate("receipt", 2024) == 1
        assert allocate("receipt", 2024) == 2

    def test_current_does_not_allocate(self, db_engine):
        with session_scope() as s:
            assert SequenceService(s).current("invoice", 2024) == 0
        allocate("invoice", 2024)
        with session_scope() as s:
            assert SequenceService(s).current("invoice", 2024) == 1

    def test_keys_are_independent(self, db_engine):
        assert allocate("receipt", 2024) == 1
        assert allocate("receipt", 2025) == 1
        assert allocate("invoice", 2024) == 1
        assert allocate("receipt", 2024) == 2

    def test_rollback_does_not_consume(self, session_factory):
        session = session_factory()
        try:
            session.begin()
            assert SequenceService(session).next("receipt", 2024) == 1
            session.rollback()
        finally:
            session.close()
        assert allocate("receipt", 2024) == 1


class TestConcurrentAllocation:
    def test_no_duplicates_no_gaps(self, db_engine):
        n = 40
        barrier = threading.Barrier(WORKERS)

        def worker(count: int) -> list[int]:
            barrier.wait()
            return [allocate("receipt", 2024) for _ in range(count)]

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            futures = [pool.submit(worker, n // WORKERS) for _ in range(WORKERS)]
            values = [v for f in futures for v in f.result()]

        assert sorted(values) == list(range(1, n + 1))

    def test_concurrent_first_allocation_creates_one_row(self, db_engine):
        barrier = threading.Barrier(WORKERS)

        def worker() -> int:
            barrier.wait()
            return allocate("invoice", 2030)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            values = list(pool.map(lambda _: worker(), range(WORKERS)))

        assert sorted(values) == list(range(1, WORKERS + 1))
