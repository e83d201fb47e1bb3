"""
Pytest fixtures for the POS kernel test suite.

Provides:
- A fresh database per test (SQLite file under tmp_path, or DATABASE_URL)
- Sessions, session factory, deterministic clock
- TransactionLedger wired with fakes for the TSE and the payment provider
- Structured log capture

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL.  When unset, every test gets its
  own SQLite database file.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import timedelta
from io import StringIO

import pytest
from sqlalchemy.orm import Session

from pos_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    reset_engine,
)
from pos_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from pos_kernel.db.triggers import (
    install_immutability_triggers,
    uninstall_immutability_triggers,
)
from pos_kernel.domain.clock import DeterministicClock
from pos_kernel.domain.fiscal import FiscalContext, FiscalSignature, FiscalStart
from pos_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from pos_kernel.services.audit_log import AuditLog
from pos_kernel.services.transaction_ledger import TransactionLedger

# Test actor ID for all test operations
TEST_ACTOR_ID = "admin-test-001"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


def pytest_collection_modifyitems(config, items):
    if os.environ.get("DATABASE_URL", "").startswith("postgresql"):
        return
    skip_pg = pytest.mark.skip(reason="needs DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


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
    Capture pos_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger):
            ledger.create_transaction(1000, "EUR", actor_id="a")
            logs = captured_logs()
            assert any(r["message"] == "ledger_transaction_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("pos_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


def get_database_url(tmp_path) -> str:
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'pos_test.db'}"


@pytest.fixture
def db_engine(tmp_path):
    """Fresh schema (tables + triggers) for every test."""
    engine = init_engine_from_url(
        get_database_url(tmp_path),
        pool_size=20,
        max_overflow=20,
        pool_timeout=30,
        busy_timeout_seconds=60,
    )
    if is_postgres():
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "DROP TABLE IF EXISTS pos_audit_logs, counters, pos_transactions CASCADE"
            )
    create_tables(install_triggers=True)
    yield engine
    register_immutability_listeners()
    reset_engine()


@pytest.fixture
def session(db_engine) -> Session:
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@contextmanager
def disabled_immutability():
    """
    Disable both ORM and database-level immutability enforcement.

    Use this for tests that need to simulate tampering with audit data.
    """
    engine = get_engine()
    unregister_immutability_listeners()
    uninstall_immutability_triggers(engine)
    try:
        yield
    finally:
        register_immutability_listeners()
        install_immutability_triggers(engine)


@pytest.fixture
def tamper():
    """Yields the disabled_immutability context manager."""
    return disabled_immutability


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def test_actor_id() -> str:
    return TEST_ACTOR_ID


@pytest.fixture
def audit_log(session, deterministic_clock) -> AuditLog:
    return AuditLog(session, deterministic_clock)


class FakeFiscalizer:
    """In-memory TSE.  Set ``fail_on`` to {"start"} / {"finish"} to fail a stage."""

    provider = "fake-tse"
    serial = "TSE-SERIAL-0001"

    def __init__(self, clock: DeterministicClock):
        self._clock = clock
        self._lock = threading.Lock()
        self.fail_on: set[str] = set()
        self.start_calls: list[FiscalContext] = []
        self.finish_calls: list[FiscalContext] = []
        self._counter = 0

    def start(self, context: FiscalContext) -> FiscalStart:
        with self._lock:
            self.start_calls.append(context)
        if "start" in self.fail_on:
            raise ConnectionError("TSE unreachable")
        return FiscalStart(
            provider=self.provider,
            tse_tx_id=f"tse-{context.transaction_id}",
            serial=self.serial,
            started_at=self._clock.now(),
        )

    def finish(self, context: FiscalContext) -> FiscalSignature:
        with self._lock:
            self.finish_calls.append(context)
            if "finish" in self.fail_on:
                raise TimeoutError("TSE did not answer")
            self._counter += 1
            counter = self._counter
        now = self._clock.now()
        return FiscalSignature(
            signature=f"sig-{counter:04d}",
            signature_counter=counter,
            log_time=now,
            finished_at=now + timedelta(seconds=1),
        )


class FakePaymentProvider:
    """Payment provider whose answers are set per provider_tx_id."""

    name = "fakepay"

    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.calls: list[str] = []
        self.refunds: list[tuple[str, int]] = []
        self.unreachable = False
        self.refuse_refunds = False

    def get_payment_status(self, provider_tx_id: str) -> str:
        self.calls.append(provider_tx_id)
        if self.unreachable:
            raise ConnectionError("provider unreachable")
        return self.statuses.get(provider_tx_id, "payment_pending")

    def refund_payment(self, provider_tx_id: str, amount_cents: int) -> None:
        if self.refuse_refunds:
            raise RuntimeError("refund declined")
        self.refunds.append((provider_tx_id, amount_cents))


@pytest.fixture
def fake_fiscalizer(deterministic_clock) -> FakeFiscalizer:
    return FakeFiscalizer(deterministic_clock)


@pytest.fixture
def fake_payment_provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def ledger(session_factory, deterministic_clock) -> TransactionLedger:
    """Ledger without a fiscalizer: no TSE calls, no TSE entries."""
    return TransactionLedger(session_factory, clock=deterministic_clock)


@pytest.fixture
def fiscal_ledger(session_factory, deterministic_clock, fake_fiscalizer) -> TransactionLedger:
    return TransactionLedger(
        session_factory,
        clock=deterministic_clock,
        fiscalizer=fake_fiscalizer,
    )


@pytest.fixture
def paid_transaction(ledger, test_actor_id):
    """A 1000 EUR cent sale that has been paid."""
    tx = ledger.create_transaction(1000, "EUR", actor_id=test_actor_id)
    ledger.request_payment(tx.id, "prov-1", actor_id=test_actor_id, provider="fakepay")
    return ledger.confirm_paid(tx.id, actor_id=test_actor_id)
