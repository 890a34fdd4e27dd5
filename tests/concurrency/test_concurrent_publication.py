"""
Concurrency tests with real commits from many threads.

Verifies:
- Concurrent publications of one formula get gapless, unique sequences
- Concurrent computations of one line item get unique snapshot seqs
- A snapshot always records the version that produced its values
- The keyed lock registry never blocks unrelated keys and cleans up after itself
- Audit appends on one entity never wait on another entity's open transaction
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from estimate_kernel.services.estimate_orchestrator import EstimateOrchestrator
from estimate_kernel.services.keyed_locks import KeyedLockRegistry
from tests.conftest import (
    LABOR_COST_V1,
    LABOR_COST_V2,
    TEST_ACTOR,
    TEST_ORG,
    get_database_url,
    make_estimate,
    make_line_item,
)

pytestmark = pytest.mark.slow_locks

THREADS = 8


@pytest.fixture
def seeded(threaded_session_factory):
    """labor_cost v1 and one formula-driven line item, committed."""
    session = threaded_session_factory()
    orchestrator = EstimateOrchestrator(session, lock_registry=KeyedLockRegistry())
    orchestrator.create_formula(
        "labor_cost", "Labor Cost", LABOR_COST_V1, TEST_ACTOR, organization_id=TEST_ORG
    )
    estimate = make_estimate(session)
    line = make_line_item(
        session, estimate, 1, formula_key="labor_cost", inputs={"hours": 40, "rate": 100}
    )
    session.commit()
    return line.id


def _run_concurrently(threaded_session_factory, work, shared_locks=True):
    """Start THREADS workers at once; return results and re-raise the first error."""
    barrier = Barrier(THREADS)
    registry = KeyedLockRegistry()

    def worker(index):
        session = threaded_session_factory()
        locks = registry if shared_locks else KeyedLockRegistry()
        orchestrator = EstimateOrchestrator(session, lock_registry=locks)
        barrier.wait()
        return work(orchestrator, index)

    with ThreadPoolExecutor(max_workers=THREADS) as pool:
        futures = [pool.submit(worker, i) for i in range(THREADS)]
        return [future.result(timeout=120) for future in futures]


class TestConcurrentPublication:
    """Version sequences under contention."""

    @pytest.mark.parametrize("shared_locks", [True, False], ids=["in_process", "database_only"])
    def test_sequences_are_gapless(self, threaded_session_factory, seeded, shared_locks):
        def publish(orchestrator, index):
            return orchestrator.publish_formula_version(
                "labor_cost",
                LABOR_COST_V2,
                None,
                None,
                f"author-{index}",
                organization_id=TEST_ORG,
            ).sequence

        sequences = _run_concurrently(threaded_session_factory, publish, shared_locks)
        assert sorted(sequences) == list(range(2, THREADS + 2))

        reader = EstimateOrchestrator(threaded_session_factory())
        versions = reader.registry(TEST_ORG).list_versions("labor_cost")
        assert [v.sequence for v in versions] == list(range(1, THREADS + 2))
        assert reader.registry(TEST_ORG).get_current_version("labor_cost").sequence == THREADS + 1


class TestConcurrentComputation:
    """Snapshot history under contention."""

    def test_snapshot_seqs_unique(self, threaded_session_factory, seeded):
        def compute(orchestrator, index):
            return orchestrator.compute_line_item(seeded, f"user-{index}").seq

        seqs = _run_concurrently(threaded_session_factory, compute)
        assert sorted(seqs) == list(range(1, THREADS + 1))

        reader = EstimateOrchestrator(threaded_session_factory())
        history = reader.get_snapshot_history(seeded)
        assert [s.seq for s in history] == list(range(1, THREADS + 1))

    def test_values_match_recorded_version(self, threaded_session_factory, seeded):
        """Computations racing publications always record the version they used."""

        def compute_or_publish(orchestrator, index):
            if index % 2:
                orchestrator.publish_formula_version(
                    "labor_cost", LABOR_COST_V2, None, None, TEST_ACTOR, organization_id=TEST_ORG
                )
                return None
            return orchestrator.compute_line_item(seeded, TEST_ACTOR)

        results = _run_concurrently(threaded_session_factory, compute_or_publish)
        snapshots = [r for r in results if r is not None]
        assert len(snapshots) == THREADS // 2
        for snapshot in snapshots:
            expected = Decimal("4000") if snapshot.formula_sequence == 1 else Decimal("4480")
            assert snapshot.line_total == expected


class TestKeyedLockRegistry:
    """Per-key locking."""

    def test_different_keys_do_not_block(self):
        registry = KeyedLockRegistry()
        acquired = threading.Event()

        def other_key():
            with registry.hold(("formula", TEST_ORG, "b")):
                acquired.set()

        with registry.hold(("formula", TEST_ORG, "a")):
            thread = threading.Thread(target=other_key)
            thread.start()
            assert acquired.wait(timeout=5)
            thread.join()

    def test_same_key_blocks(self):
        registry = KeyedLockRegistry()
        acquired = threading.Event()

        def same_key():
            with registry.hold("k"):
                acquired.set()

        with registry.hold("k"):
            thread = threading.Thread(target=same_key)
            thread.start()
            assert not acquired.wait(timeout=0.2)
        assert acquired.wait(timeout=5)
        thread.join()

    def test_entries_removed_when_released(self):
        registry = KeyedLockRegistry()
        with registry.hold("a"), registry.hold("b"):
            assert len(registry) == 2
        assert len(registry) == 0

    def test_entry_released_on_error(self):
        registry = KeyedLockRegistry()
        with pytest.raises(RuntimeError):
            with registry.hold("a"):
                raise RuntimeError("boom")
        assert len(registry) == 0
        with registry.hold("a"):
            pass


@pytest.fixture
def two_lines(threaded_session_factory, seeded):
    """A second committed line item next to the seeded one."""
    session = threaded_session_factory()
    estimate = make_estimate(session, label="Second")
    other = make_line_item(
        session, estimate, 1, formula_key="labor_cost", inputs={"hours": 8, "rate": 50}
    )
    session.commit()
    return seeded, other.id


@pytest.mark.postgres
@pytest.mark.skipif(
    not get_database_url().startswith("postgresql"),
    reason="row-level locks need PostgreSQL; SQLite serializes every writer",
)
class TestAuditChainsDoNotSerialize:
    """An open transaction on one entity leaves other entities' audit chains free."""

    def _hold_open(self, threaded_session_factory, work):
        """Run ``work`` in a transaction that stays open until the returned session commits."""
        session = threaded_session_factory()
        orchestrator = EstimateOrchestrator(
            session, auto_commit=False, lock_registry=KeyedLockRegistry()
        )
        work(orchestrator)
        return session

    def _completes_while_held(self, threaded_session_factory, holder, work):
        done = threading.Event()
        errors = []

        def other():
            orchestrator = EstimateOrchestrator(
                threaded_session_factory(), lock_registry=KeyedLockRegistry()
            )
            try:
                work(orchestrator)
            except Exception as exc:
                errors.append(exc)
            finally:
                done.set()

        thread = threading.Thread(target=other)
        thread.start()
        try:
            finished = done.wait(timeout=10)
        finally:
            holder.commit()
            thread.join()
        assert finished
        assert errors == []

    def test_line_items(self, threaded_session_factory, two_lines):
        first, second = two_lines
        holder = self._hold_open(
            threaded_session_factory, lambda o: o.compute_line_item(first, "holder")
        )
        self._completes_while_held(
            threaded_session_factory, holder, lambda o: o.compute_line_item(second, "other")
        )

    def test_publication_and_computation(self, threaded_session_factory, seeded):
        holder = self._hold_open(
            threaded_session_factory,
            lambda o: o.publish_formula_version(
                "labor_cost", LABOR_COST_V2, None, None, "holder", organization_id=TEST_ORG
            ),
        )
        self._completes_while_held(
            threaded_session_factory, holder, lambda o: o.compute_line_item(seeded, "other")
        )

    def test_same_line_item_waits(self, threaded_session_factory, seeded):
        holder = self._hold_open(
            threaded_session_factory, lambda o: o.compute_line_item(seeded, "holder")
        )
        done = threading.Event()

        def same():
            EstimateOrchestrator(
                threaded_session_factory(), lock_registry=KeyedLockRegistry()
            ).compute_line_item(seeded, "other")
            done.set()

        thread = threading.Thread(target=same)
        thread.start()
        try:
            assert not done.wait(timeout=0.5)
        finally:
            holder.commit()
        assert done.wait(timeout=10)
        thread.join()
