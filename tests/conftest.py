"""
Pytest fixtures for the payment ledger test suite.

Provides:
- One engine and one set of tables per test session
- Per-test database sessions rolled back at teardown
- Deterministic clock, principals, configured services
- Order/payment factories and captured structured logs

Environment Variables:
- DATABASE_URL: database to test against.  Defaults to in-memory SQLite.
  Tests marked ``postgres`` (real concurrent transactions) are skipped
  unless this points at PostgreSQL.
"""

import json
import logging
import os
from collections.abc import Generator
from datetime import UTC, datetime
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from payment_config import get_active_config
from payment_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from payment_kernel.db.immutability import register_immutability_listeners, unregister_immutability_listeners
from payment_kernel.domain.access import Principal
from payment_kernel.domain.clock import DeterministicClock
from payment_kernel.logging_config import LogContext, StructuredFormatter, configure_logging, reset_logging
from payment_kernel.models.ledger import LedgerEntryType
from payment_kernel.selectors.journal_selector import JournalSelector
from payment_kernel.selectors.ledger_selector import LedgerSelector
from payment_kernel.services.chart_service import ChartOfAccountsService
from payment_kernel.services.ledger_service import LedgerService
from payment_kernel.services.sequence_service import SequenceService
from payment_modules.credit_notes.service import CreditNoteService
from payment_modules.reconciliation.service import ReconciliationService
from payment_modules.refunds.service import RefundService
from payment_modules.webhooks.service import WebhookService

# Test actor IDs for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-4000-8000-000000000001")
ADMIN_ID = UUID("00000000-0000-4000-8000-0000000000a1")
CUSTOMER_ID = UUID("00000000-0000-4000-8000-0000000000c1")
OTHER_CUSTOMER_ID = UUID("00000000-0000-4000-8000-0000000000c2")

DEFAULT_TEST_URL = "sqlite:///:memory:"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_URL)


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


def pytest_collection_modifyitems(config, items):
    """Skip ``postgres`` tests when the suite runs on SQLite."""
    if is_postgres_url(get_database_url()):
        return
    skip = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


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
    Capture payment_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger_service):
            ledger_service.write(...)
            assert any(r["message"] == "ledger_entry_written" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("payment_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure (engine + tables once per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session; immutability listeners stay active."""
    from payment_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    drop_tables(db_engine)
    create_tables(db_engine)
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables(db_engine)


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """
    Database session joined to an outer transaction.

    ``session.commit()`` inside a test releases a savepoint; the outer
    transaction is rolled back at teardown, undoing everything the test
    wrote.
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


@pytest.fixture
def pg_session_factory(db_engine, db_tables):
    """
    Real committing sessions for concurrency tests (PostgreSQL only).

    Data is removed at teardown by deleting from every table.
    """
    from payment_kernel.db.base import Base

    factory = get_session_factory()
    created: list[Session] = []

    def tracked_factory() -> Session:
        s = factory()
        created.append(s)
        return s

    yield tracked_factory

    for s in created:
        s.rollback()
        s.close()
    unregister_immutability_listeners()
    try:
        with db_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())
    finally:
        register_immutability_listeners()


# =============================================================================
# Clock, config, principals
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Fixed at 2024-03-15 12:00 UTC until advanced."""
    return DeterministicClock(datetime(2024, 3, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def payment_config():
    return get_active_config()


@pytest.fixture
def admin() -> Principal:
    return Principal(actor_id=ADMIN_ID, is_admin=True)


@pytest.fixture
def customer() -> Principal:
    return Principal(actor_id=CUSTOMER_ID)


@pytest.fixture
def other_customer() -> Principal:
    return Principal(actor_id=OTHER_CUSTOMER_ID)


@pytest.fixture
def gateway() -> Principal:
    """System principal used for webhook deliveries."""
    return Principal.system(TEST_ACTOR_ID)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def chart(session, deterministic_clock, payment_config, test_actor_id) -> ChartOfAccountsService:
    service = ChartOfAccountsService(session, deterministic_clock, payment_config)
    service.seed(test_actor_id)
    return service


@pytest.fixture
def sequence(session) -> SequenceService:
    return SequenceService(session)


@pytest.fixture
def ledger_service(session, chart, deterministic_clock, payment_config, sequence) -> LedgerService:
    return LedgerService(session, deterministic_clock, payment_config, sequence)


@pytest.fixture
def refund_service(session, chart, deterministic_clock, payment_config, sequence) -> RefundService:
    return RefundService(session, deterministic_clock, payment_config, sequence)


@pytest.fixture
def credit_note_service(session, chart, deterministic_clock, payment_config, sequence) -> CreditNoteService:
    return CreditNoteService(session, deterministic_clock, payment_config, sequence)


@pytest.fixture
def reconciliation_service(session, chart, deterministic_clock, payment_config) -> ReconciliationService:
    return ReconciliationService(session, deterministic_clock, payment_config)


@pytest.fixture
def webhook_service(session, chart, deterministic_clock, payment_config, sequence) -> WebhookService:
    return WebhookService(session, deterministic_clock, payment_config, sequence)


@pytest.fixture
def ledger_selector(session) -> LedgerSelector:
    return LedgerSelector(session)


@pytest.fixture
def journal_selector(session) -> JournalSelector:
    return JournalSelector(session)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_order(ledger_service, test_actor_id):
    """
    Register an order owned by ``customer``.

    Usage::

        order = make_order(total_owed=Decimal("100.00"))
    """

    def _make(
        total_owed: Decimal = Decimal("100.00"),
        currency: str = "USD",
        customer_id: UUID | None = CUSTOMER_ID,
        order_id: UUID | None = None,
    ):
        return ledger_service.projection.register_order(
            order_id=order_id or uuid4(),
            total_owed=total_owed,
            currency=currency,
            actor_id=test_actor_id,
            customer_id=customer_id,
            order_reference=f"Q-{uuid4().hex[:8]}",
        )

    return _make


@pytest.fixture
def pay(ledger_service, deterministic_clock, test_actor_id):
    """
    Record a completed customer payment; advances the clock one second so
    entries never share a timestamp.
    """

    def _pay(
        order,
        amount: Decimal,
        currency: str | None = None,
        *,
        gateway: str = "stripe",
        exchange_rate: Decimal | None = None,
        reference: str | None = None,
    ):
        deterministic_clock.advance(1)
        return ledger_service.write(
            order_id=order.id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=amount,
            currency=currency or order.currency,
            actor_id=test_actor_id,
            payment_method=gateway,
            gateway_code=gateway,
            gateway_transaction_id=f"{gateway}_{uuid4().hex[:12]}",
            reference_number=reference,
            exchange_rate=exchange_rate,
        )

    return _pay
