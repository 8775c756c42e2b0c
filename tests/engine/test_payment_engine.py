"""
PaymentEngine: commit/rollback ownership and retry of concurrency failures.

On SQLite each engine session joins the test connection through a
SAVEPOINT, so ``commit`` releases the savepoint and the test's outer
transaction still undoes everything.  The ``postgres`` tests use real
committing sessions and real threads.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from payment_kernel.domain.projection import PaymentStatus
from payment_kernel.exceptions import AccessDeniedError
from payment_kernel.selectors.ledger_selector import LedgerSelector
from payment_kernel.services.chart_service import ChartOfAccountsService
from payment_modules.engine import PaymentEngine
from payment_modules.webhooks import PaymentTransactionStatus


@pytest.fixture
def engine(session, chart, deterministic_clock, payment_config):
    connection = session.connection()

    def factory() -> Session:
        return Session(bind=connection, join_transaction_mode="create_savepoint", expire_on_commit=False)

    return PaymentEngine(
        factory,
        clock=deterministic_clock,
        config=payment_config,
        retry_attempts=3,
        retry_backoff=0,
    )


@pytest.fixture
def order_id(engine, admin):
    order_id = uuid4()
    engine.register_order(order_id=order_id, total_owed=Decimal("80.00"), currency="USD", principal=admin)
    return order_id


class TestUnitOfWork:

    def test_payment_committed(self, engine, admin, order_id, ledger_selector):
        result = engine.record_payment(
            order_id=order_id,
            amount=Decimal("80.00"),
            currency="USD",
            principal=admin,
            payment_method="payu",
            gateway_code="payu",
        )

        assert result.projection.payment_status == PaymentStatus.PAID
        assert [e.id for e in ledger_selector.history(order_id)] == [result.entry_id]

    def test_error_rolls_back_whole_unit(self, engine, admin, order_id, ledger_selector, test_actor_id):
        def operation(services):
            services.ledger.write(
                order_id=order_id,
                entry_type="customer_payment",
                amount=Decimal("10.00"),
                currency="USD",
                actor_id=test_actor_id,
            )
            raise RuntimeError("downstream failure")

        with pytest.raises(RuntimeError):
            engine.run(operation)

        assert ledger_selector.history(order_id) == []

    def test_services_share_one_session(self, engine):
        with engine.unit_of_work() as services:
            assert services.refunds.session is services.session
            assert services.webhooks.session is services.session
            assert services.reconciliation.session is services.session

    def test_serialization_failure_retried(self, engine):
        calls = []

        def flaky(services):
            calls.append(services.session)
            if len(calls) == 1:
                raise OperationalError("SELECT 1", {}, Exception("could not serialize access"))
            return "ok"

        assert engine.run(flaky, correlation_id="req-1") == "ok"
        assert len(calls) == 2
        assert calls[0] is not calls[1]

    def test_admin_required_for_manual_writes(self, engine, customer, order_id):
        with pytest.raises(AccessDeniedError):
            engine.record_payment(order_id=order_id, amount=Decimal("1.00"), currency="USD", principal=customer)


class TestEngineOperations:

    def test_webhook_through_engine(self, engine, gateway, order_id, ledger_selector):
        payload = {
            "order_id": str(order_id),
            "gateway_transaction_id": "ch_engine_1",
            "amount": "80.00",
            "currency": "USD",
            "status": "succeeded",
            "gateway_code": "stripe",
        }

        first = engine.process_webhook(payload, gateway)
        second = engine.process_webhook(payload, gateway)

        assert first.payment_status == PaymentTransactionStatus.COMPLETED
        assert second.duplicate
        assert len(ledger_selector.history(order_id)) == 1

    def test_refund_round_trip(self, engine, admin, order_id, ledger_selector):
        engine.record_payment(order_id=order_id, amount=Decimal("80.00"), currency="USD", principal=admin)

        request = engine.create_refund(
            admin,
            order_id=order_id,
            refund_type="partial",
            amount=Decimal("30.00"),
            currency="USD",
            reason_code="product_issue",
        )
        approved = engine.approve_refund(request.id, admin)
        item = engine.execute_refund_item(
            approved.items[0].id, admin, gateway_refund_id="re_1", outcome="success",
        )

        assert item.refund_entry_id is not None
        assert ledger_selector.totals(order_id).net_paid == Decimal("50.00")
        assert [r.id for r in engine.run(lambda s: s.refunds.list_for_order(order_id, admin))] == [request.id]

    def test_credit_note_applied(self, engine, admin, customer, order_id, ledger_selector):
        note = engine.run(
            lambda s: s.credit_notes.issue(
                customer_id=customer.actor_id,
                amount=Decimal("30.00"),
                currency="USD",
                reason="goodwill",
                principal=admin,
                auto_approve=True,
            )
        )

        result = engine.apply_credit_note(note.id, order_id, admin, amount=Decimal("20.00"))

        assert result.amount_applied == Decimal("20.00")
        assert result.remaining_credit == Decimal("10.00")
        assert ledger_selector.totals(order_id).net_paid == Decimal("20.00")


@pytest.mark.postgres
class TestConcurrentDelivery:

    def test_parallel_duplicates_write_once(self, pg_session_factory, payment_config, gateway, admin):
        engine = PaymentEngine(pg_session_factory, config=payment_config, retry_attempts=5, retry_backoff=0.05)
        engine.run(lambda s: ChartOfAccountsService(s.session, config=payment_config).seed(admin.actor_id))
        order_id = uuid4()
        engine.register_order(order_id=order_id, total_owed=Decimal("25.00"), currency="USD", principal=admin)
        payload = {
            "order_id": str(order_id),
            "gateway_transaction_id": "pi_parallel",
            "amount": "25.00",
            "currency": "USD",
            "status": "success",
            "gateway_code": "stripe",
        }

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda _: engine.process_webhook(payload, gateway), range(4)))

        assert all(o.success for o in outcomes)
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        entries = engine.run(lambda s: LedgerSelector(s.session).history(order_id))
        assert len(entries) == 1
