"""
payment_modules.engine -- transaction boundary for external callers.

Responsibility:
    Composes the kernel and module services over one session per unit of
    work, commits on success, rolls back on any exception and re-runs the
    whole unit when the database reports a serialization failure.

Architecture position:
    Top of the modules layer.  The only place that commits.  Services
    below it flush and never commit, so a unit of work spanning several
    services (refund execution plus ledger write plus projection) is one
    database transaction.

Invariants enforced:
    - Every service inside a unit shares one session, clock, config and
      sequence source.
    - Nothing from a failed unit is visible: the session is rolled back
      before the exception leaves ``unit_of_work``.

Failure modes:
    - Domain errors propagate unchanged after rollback.
    - ``OperationalError`` / ``StaleDataError`` are retried up to
      ``retry_attempts`` times, then re-raised.

Usage:
    engine = PaymentEngine(get_session_factory())
    result = engine.record_payment(order_id=..., amount=Decimal("100.00"),
                                   currency="USD", principal=admin)
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from payment_config import PaymentConfig, get_active_config
from payment_kernel.db.engine import get_session_factory
from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock, SystemClock
from payment_kernel.logging_config import LogContext, get_logger
from payment_kernel.models.ledger import LedgerEntryType
from payment_kernel.services.ledger_service import LedgerService, LedgerWriteResult
from payment_kernel.services.projection_service import ProjectionResult
from payment_kernel.services.retry import run_with_retry
from payment_kernel.services.sequence_service import SequenceService
from payment_modules.credit_notes.models import CreditApplicationResult
from payment_modules.credit_notes.service import CreditNoteService
from payment_modules.reconciliation.service import ReconciliationService
from payment_modules.refunds.models import RefundItemInfo, RefundRequestInfo
from payment_modules.refunds.service import RefundService
from payment_modules.webhooks.models import WebhookOutcome
from payment_modules.webhooks.service import WebhookService

logger = get_logger("modules.engine")

T = TypeVar("T")


@dataclass
class PaymentServices:
    """
    Every service for one unit of work.

    Contract:
        Built once per session by ``PaymentEngine.unit_of_work``; the
        services share that session and never commit.
    """

    session: Session
    ledger: LedgerService
    refunds: RefundService
    credit_notes: CreditNoteService
    reconciliation: ReconciliationService
    webhooks: WebhookService

    @classmethod
    def build(
        cls,
        session: Session,
        clock: Clock,
        config: PaymentConfig,
        access_policy: AccessPolicy,
    ) -> PaymentServices:
        sequence = SequenceService(session)
        return cls(
            session=session,
            ledger=LedgerService(session, clock, config, sequence),
            refunds=RefundService(session, clock, config, sequence, access_policy),
            credit_notes=CreditNoteService(session, clock, config, sequence, access_policy),
            reconciliation=ReconciliationService(session, clock, config, access_policy),
            webhooks=WebhookService(session, clock, config, sequence, access_policy),
        )


class PaymentEngine:
    """
    Facade owning commit/rollback for the payment subsystem.

    Non-goals:
        - Does NOT hold a session between calls.
        - Does NOT retry domain errors; only concurrency failures.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        clock: Clock | None = None,
        config: PaymentConfig | None = None,
        access_policy: AccessPolicy | None = None,
        retry_attempts: int = 3,
        retry_backoff: float = 0.1,
    ):
        self._session_factory = session_factory or get_session_factory()
        self.clock = clock or SystemClock()
        self.config = config or get_active_config()
        self.access_policy = access_policy or OwnershipAccessPolicy()
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    @contextmanager
    def unit_of_work(self) -> Generator[PaymentServices, None, None]:
        """One session, one transaction: commit on exit, rollback on error."""
        session = self._session_factory()
        try:
            yield PaymentServices.build(session, self.clock, self.config, self.access_policy)
            session.commit()
        except Exception:
            session.rollback()
            logger.warning("unit_of_work_rolled_back", exc_info=True)
            raise
        finally:
            session.close()

    def run(self, operation: Callable[[PaymentServices], T], *, correlation_id: str | None = None) -> T:
        """Run ``operation`` in a fresh unit of work, retrying serialization failures."""

        def attempt() -> T:
            with self.unit_of_work() as services:
                return operation(services)

        with LogContext.bind(correlation_id=correlation_id):
            return run_with_retry(
                attempt,
                attempts=self._retry_attempts,
                backoff_base=self._retry_backoff,
            )

    # -------------------------------------------------------------------------
    # Orders and payments
    # -------------------------------------------------------------------------

    def register_order(
        self,
        *,
        order_id: UUID,
        total_owed: Decimal,
        currency: str,
        principal: Principal,
        customer_id: UUID | None = None,
        order_reference: str | None = None,
    ) -> ProjectionResult:
        self.access_policy.ensure_admin(principal, f"order:{order_id}")

        def operation(s: PaymentServices) -> ProjectionResult:
            s.ledger.projection.register_order(
                order_id=order_id,
                total_owed=total_owed,
                currency=currency,
                actor_id=principal.actor_id,
                customer_id=customer_id,
                order_reference=order_reference,
            )
            return s.ledger.projection.recompute(order_id)

        return self.run(operation)

    def record_payment(
        self,
        *,
        order_id: UUID,
        amount: Decimal,
        currency: str,
        principal: Principal,
        entry_type: LedgerEntryType | str = LedgerEntryType.CUSTOMER_PAYMENT,
        **fields: Any,
    ) -> LedgerWriteResult:
        """Write one ledger entry outside the webhook path (manual payments, adjustments)."""
        self.access_policy.ensure_admin(principal, f"order:{order_id}")
        return self.run(
            lambda s: s.ledger.write(
                order_id=order_id,
                entry_type=entry_type,
                amount=amount,
                currency=currency,
                actor_id=principal.actor_id,
                **fields,
            )
        )

    def process_webhook(self, payload: dict[str, Any], principal: Principal) -> WebhookOutcome:
        return self.run(lambda s: s.webhooks.process_payload(payload, principal))

    # -------------------------------------------------------------------------
    # Refunds and credit
    # -------------------------------------------------------------------------

    def create_refund(self, principal: Principal, **fields: Any) -> RefundRequestInfo:
        return self.run(lambda s: s.refunds.create(principal=principal, **fields))

    def approve_refund(
        self,
        request_id: UUID,
        principal: Principal,
        approved_amount: Decimal | None = None,
    ) -> RefundRequestInfo:
        return self.run(lambda s: s.refunds.approve(request_id, principal, approved_amount=approved_amount))

    def execute_refund_item(self, item_id: UUID, principal: Principal, **fields: Any) -> RefundItemInfo:
        return self.run(lambda s: s.refunds.execute_item(item_id, principal, **fields))

    def apply_credit_note(
        self,
        note_id: UUID,
        order_id: UUID,
        principal: Principal,
        amount: Decimal | None = None,
    ) -> CreditApplicationResult:
        return self.run(lambda s: s.credit_notes.apply(note_id, order_id, principal, amount=amount))
