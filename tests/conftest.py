"""
Pytest fixtures for the estimate kernel test suite.

Provides:
- A session-scoped database (in-memory SQLite by default)
- Per-test sessions rolled back at teardown
- A file-backed database for threaded concurrency tests
- Factories for estimates, line items and formulas

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL).
  If not set, uses an in-memory SQLite database.
"""

import json
import logging
import os
import threading
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from estimate_kernel.db.base import Base
from estimate_kernel.db.engine import (
    create_engine_from_url,
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from estimate_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from estimate_kernel.domain.aggregation import PricingPolicy, VatBase
from estimate_kernel.domain.clock import DeterministicClock
from estimate_kernel.domain.snapshot import encode_values
from estimate_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from estimate_kernel.models.estimate import EstimateModel, EstimateStatus, LineItemModel
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.estimate_orchestrator import EstimateOrchestrator
from estimate_kernel.services.formula_registry import FormulaRegistry
from estimate_kernel.services.keyed_locks import KeyedLockRegistry

TEST_ORG = "org-test"
TEST_ACTOR = "estimator@example.com"

LABOR_COST_V1 = {
    "inputs": [
        {"name": "hours", "type": "number", "min": 0, "unit": "h"},
        {"name": "rate", "type": "number", "min": 0, "unit": "PHP/h"},
    ],
    "assignments": [{"variable": "line_total", "expression": "hours * rate"}],
    "outputs": [{"name": "line_total", "unit": "PHP"}],
}

LABOR_COST_V2 = {
    "inputs": LABOR_COST_V1["inputs"],
    "assignments": [{"variable": "line_total", "expression": "hours * rate * 1.12"}],
    "outputs": [{"name": "line_total", "unit": "PHP"}],
}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture estimate_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.compute_line_item(...)
            logs = captured_logs()
            assert any(r["message"] == "line_item_computed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("estimate_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", "sqlite://")


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session."""
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end.

    Immutability listeners are registered once and remain active.
    """
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _delete_all_rows(engine):
    """Remove all data with raw SQL (bypasses ORM immutability listeners)."""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(text(f"DELETE FROM {table.name}"))


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    Uses the SQLAlchemy 2.0 ``join_transaction_mode`` pattern:
    - Opens a dedicated connection with an outer transaction
    - Creates a session that *joins* the outer transaction
    - Any ``session.commit()`` inside the test releases a savepoint; it
      does NOT actually commit to the database
    - At teardown the outer transaction is rolled back, undoing ALL data
      changes made during the test
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Concurrency testing fixtures (real commits, separate file-backed database)
# =============================================================================


@pytest.fixture(scope="function")
def threaded_engine(tmp_path, db_tables):
    """Engine whose sessions really commit and can be used from many threads.

    SQLite: a fresh database file per test (writers serialized by
    BEGIN IMMEDIATE).  Other databases: the suite engine, emptied at teardown.
    """
    url = get_database_url()
    if url.startswith("sqlite"):
        eng = create_engine_from_url(f"sqlite:///{tmp_path / 'kernel.db'}", sqlite_timeout=60.0)
        Base.metadata.create_all(eng)
        yield eng
        eng.dispose()
    else:
        eng = create_engine_from_url(url, pool_size=30, max_overflow=20)
        yield eng
        _delete_all_rows(eng)
        eng.dispose()


@pytest.fixture(scope="function")
def threaded_session_factory(threaded_engine):
    """Provide a tracked session factory for creating sessions in concurrent threads.

    On teardown every tracked session is rolled back and closed.
    """
    factory = sessionmaker(bind=threaded_engine, expire_on_commit=False)
    created_sessions = []
    lock = threading.Lock()

    def tracked_factory():
        with lock:
            s = factory()
            created_sessions.append(s)
            return s

    yield tracked_factory

    for s in created_sessions:
        if s.is_active:
            s.rollback()
        s.close()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def auditor_service(session: Session, deterministic_clock):
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def registry(session: Session, deterministic_clock, auditor_service):
    return FormulaRegistry(session, TEST_ORG, deterministic_clock, auditor_service)


@pytest.fixture
def orchestrator(session: Session, deterministic_clock):
    """Orchestrator that commits (releases savepoints) like production code."""
    return EstimateOrchestrator(
        session, deterministic_clock, lock_registry=KeyedLockRegistry()
    )


# =============================================================================
# Data factories
# =============================================================================


def make_estimate(
    session: Session,
    label: str = "Test estimate",
    organization_id: str = TEST_ORG,
    markup_rate: Decimal = Decimal("10"),
    vat_rate: Decimal = Decimal("12"),
    status: EstimateStatus = EstimateStatus.DRAFT,
) -> EstimateModel:
    estimate = EstimateModel(
        organization_id=organization_id,
        label=label,
        status=status.value,
        markup_rate=markup_rate,
        vat_rate=vat_rate,
        created_by=TEST_ACTOR,
    )
    session.add(estimate)
    session.flush()
    return estimate


def make_line_item(
    session: Session,
    estimate: EstimateModel,
    position: int,
    formula_key: str | None = None,
    inputs: dict | None = None,
    manual_amount: Decimal | None = None,
    category: str | None = None,
    output_variable: str | None = None,
    description: str = "",
) -> LineItemModel:
    line_item = LineItemModel(
        estimate_id=estimate.id,
        position=position,
        description=description or f"Line {position}",
        category=category,
        formula_key=formula_key,
        inputs=encode_values(inputs or {}),
        output_variable=output_variable,
        manual_amount=manual_amount,
        created_by=TEST_ACTOR,
    )
    session.add(line_item)
    session.flush()
    return line_item


@pytest.fixture
def create_estimate(session: Session):
    """Factory fixture; the estimate is committed so orchestrator reads see it."""

    def _create(**kwargs) -> EstimateModel:
        estimate = make_estimate(session, **kwargs)
        session.commit()
        return estimate

    return _create


@pytest.fixture
def create_line_item(session: Session):
    """Factory fixture; the line item is committed so orchestrator reads see it."""

    def _create(estimate: EstimateModel, position: int, **kwargs) -> LineItemModel:
        line_item = make_line_item(session, estimate, position, **kwargs)
        session.commit()
        return line_item

    return _create


@pytest.fixture
def labor_cost(orchestrator) -> UUID:
    """LaborCost v1 (hours * rate) published in TEST_ORG."""
    version = orchestrator.create_formula(
        "labor_cost",
        "Labor Cost",
        LABOR_COST_V1,
        TEST_ACTOR,
        organization_id=TEST_ORG,
        category="labor",
    )
    return version.version_id


@pytest.fixture
def pricing_policy(orchestrator) -> PricingPolicy:
    """Default policy recorded for TEST_ORG."""
    return orchestrator.configure_pricing_policy(
        TEST_ORG,
        PricingPolicy(vat_base=VatBase.SUBTOTAL_PLUS_MARKUP),
        TEST_ACTOR,
    )
