"""
payment_modules.webhooks.service
================================

Responsibility:
    Idempotent, all-or-nothing intake of authenticated payment gateway
    events.  One ``process`` call records or updates the payment
    transaction, writes or transitions its ledger entry (with the journal
    posting and projection recompute that come with it), resolves a guest
    checkout session and optionally creates the placed-order record.

Architecture:
    Module layer.  All ledger work goes through ``LedgerService``.  The
    whole unit runs inside a SAVEPOINT so a failure leaves nothing behind
    in the caller's transaction.

Invariants enforced:
    - One payment transaction and one ledger entry per idempotency key
      (gateway transaction id, else internal transaction id).  A
      redelivered event is a success no-op.
    - Concurrent first deliveries race on the unique key; the loser
      re-reads and continues as a redelivery.
    - A final payment is never reopened; a contradicting event is refused
      (fail closed).
    - At most one placed order per payment transaction.

Failure modes:
    - Validation and workflow errors are returned as a failed
      ``WebhookOutcome`` with a single error message; database errors
      other than the idempotency race propagate to the caller's retry
      loop.

Audit relevance:
    ``webhook_*`` log events carry the idempotency key and order id.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import to_money, validate_currency
from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock
from payment_kernel.exceptions import (
    InvalidAmountError,
    PaymentDetailsMismatchError,
    PaymentKernelError,
    PaymentStateConflictError,
    ValidationError,
)
from payment_kernel.logging_config import LogContext, get_logger
from payment_kernel.models.ledger import LedgerEntryStatus, LedgerEntryType
from payment_kernel.services.base import BaseService
from payment_kernel.services.ledger_service import LedgerService, LedgerWriteResult
from payment_kernel.services.sequence_service import SequenceService, SequenceSource
from payment_kernel.utils.idempotency import gateway_event_key
from payment_modules.webhooks.models import (
    GatewayEvent,
    GuestCheckoutSessionInfo,
    GuestSessionStatus,
    PaymentTransactionInfo,
    PaymentTransactionStatus,
    PlacedOrderInfo,
    WebhookOutcome,
    response_to_metadata,
)
from payment_modules.webhooks.orm import (
    GuestCheckoutSessionModel,
    PaymentTransactionModel,
    PlacedOrderModel,
)
from payment_modules.webhooks.workflows import GUEST_SESSION_WORKFLOW, PAYMENT_TRANSACTION_WORKFLOW

logger = get_logger("modules.webhooks.service")

_LEDGER_STATUS = {
    PaymentTransactionStatus.PENDING: LedgerEntryStatus.PENDING,
    PaymentTransactionStatus.COMPLETED: LedgerEntryStatus.COMPLETED,
    PaymentTransactionStatus.FAILED: LedgerEntryStatus.FAILED,
}

_ACTIONS = {
    PaymentTransactionStatus.COMPLETED: "complete",
    PaymentTransactionStatus.FAILED: "fail",
}


class WebhookService(BaseService):
    """
    Webhook ingestion gateway.

    Contract:
        ``process`` never raises for a bad or contradicting event; it
        returns ``WebhookOutcome(success=False, ...)`` and the caller's
        transaction is left exactly as it was.

    Non-goals:
        - Does NOT verify signatures or handle HTTP retries (transport).
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PaymentConfig | None = None,
        sequence: SequenceSource | None = None,
        access_policy: AccessPolicy | None = None,
    ):
        super().__init__(session, clock, config)
        self._sequence = sequence or SequenceService(session)
        self._ledger = LedgerService(session, self.clock, self.config, self._sequence)
        self._access = access_policy or OwnershipAccessPolicy()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def process_payload(self, payload: Mapping[str, Any], principal: Principal) -> WebhookOutcome:
        """Validate a decoded webhook body, then ``process`` it."""
        try:
            event = GatewayEvent.from_payload(payload)
        except PaymentKernelError as exc:
            logger.warning(
                "webhook_payload_rejected",
                extra={"error_code": exc.code, "error_msg": str(exc)},
            )
            return WebhookOutcome.failure(None, exc.code, str(exc))
        return self.process(event, principal)

    def process(self, event: GatewayEvent, principal: Principal) -> WebhookOutcome:
        """
        Apply one gateway event as a single atomic unit.

        Steps: (a) payment transaction created or updated, (b) ledger
        entry written or transitioned with its journal posting, (c)
        projection recomputed, (d) guest checkout session resolved,
        (e) placed order created when requested and the payment is
        complete.
        """
        self._access.ensure_admin(principal, "webhooks")
        try:
            key = gateway_event_key(event.gateway_transaction_id, event.transaction_id)
        except ValueError as exc:
            return WebhookOutcome.failure(None, "MISSING_WEBHOOK_FIELD", str(exc))

        with LogContext.bind(idempotency_key=key, order_id=str(event.order_id)):
            savepoint = self.session.begin_nested()
            try:
                outcome = self._apply(event, key, principal.actor_id)
                savepoint.commit()
            except PaymentKernelError as exc:
                savepoint.rollback()
                logger.warning(
                    "webhook_event_rejected",
                    extra={"error_code": exc.code, "error_msg": str(exc), "gateway_status": event.status},
                )
                return WebhookOutcome.failure(key, exc.code, str(exc))

            logger.info(
                "webhook_event_processed",
                extra={
                    "payment_status": outcome.payment_status.value if outcome.payment_status else None,
                    "duplicate": outcome.duplicate,
                    "ledger_entry_id": str(outcome.ledger_entry_id) if outcome.ledger_entry_id else None,
                    "guest_session_updated": outcome.guest_session_updated,
                    "placed_order_id": str(outcome.placed_order_id) if outcome.placed_order_id else None,
                },
            )
        return outcome

    def map_status(self, gateway_status: str) -> PaymentTransactionStatus:
        """Gateway wording -> payment status; unknown words stay pending."""
        word = (gateway_status or "").strip().lower()
        settings = self.config.webhooks
        if word in {s.lower() for s in settings.success_statuses}:
            return PaymentTransactionStatus.COMPLETED
        if word in {s.lower() for s in settings.failure_statuses}:
            return PaymentTransactionStatus.FAILED
        return PaymentTransactionStatus.PENDING

    # =========================================================================
    # Guest checkout
    # =========================================================================

    def create_guest_session(
        self,
        *,
        order_id: UUID,
        session_token: str,
        guest_name: str,
        guest_email: str,
        payment_amount: Decimal,
        payment_currency: str,
        payment_method: str,
        principal: Principal,
        guest_phone: str | None = None,
        shipping_address: dict[str, Any] | None = None,
    ) -> GuestCheckoutSessionInfo:
        """Hold guest checkout details until the payment resolves."""
        self._access.ensure_admin(principal, "guest_checkout_sessions")
        self._ledger.projection.get_order(order_id)
        amount = to_money(payment_amount)
        if amount <= 0:
            raise InvalidAmountError(amount, "guest checkout amount must be positive")
        if not session_token or not session_token.strip():
            raise ValidationError("session_token is required")

        now = self.clock.now()
        guest = GuestCheckoutSessionModel(
            session_token=session_token.strip(),
            order_id=order_id,
            guest_name=guest_name,
            guest_email=guest_email,
            guest_phone=guest_phone,
            shipping_address=shipping_address,
            payment_currency=validate_currency(payment_currency),
            payment_method=payment_method,
            payment_amount=amount,
            status=GUEST_SESSION_WORKFLOW.initial_state,
            expires_at=now + timedelta(hours=self.config.webhooks.guest_session_ttl_hours),
            created_by_id=principal.actor_id,
        )
        self.session.add(guest)
        self.session.flush()
        logger.info(
            "guest_session_created",
            extra={
                "guest_session_id": str(guest.id),
                "order_id": str(order_id),
                "guest_email": guest_email,
                "session_token": guest.session_token,
            },
        )
        return guest.to_dto()

    def expire_stale_guest_sessions(self, principal: Principal, now: datetime | None = None) -> int:
        """Expire active guest sessions past their expiry time.  Returns the count."""
        self._access.ensure_admin(principal, "guest_checkout_sessions")
        now = now or self.clock.now()
        stale = self.session.execute(
            select(GuestCheckoutSessionModel)
            .where(
                GuestCheckoutSessionModel.status == GuestSessionStatus.ACTIVE.value,
                GuestCheckoutSessionModel.expires_at <= now,
            )
            .with_for_update()
        ).scalars().all()
        for guest in stale:
            guest.status = GUEST_SESSION_WORKFLOW.next_state(guest.status, "expire")
            guest.resolved_at = now
            guest.updated_by_id = principal.actor_id
        self.session.flush()
        if stale:
            logger.info("guest_sessions_expired", extra={"count": len(stale)})
        return len(stale)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_transaction(self, idempotency_key: str) -> PaymentTransactionInfo | None:
        txn = self._find_transaction(idempotency_key, lock=False)
        return txn.to_dto() if txn else None

    def get_guest_session(self, session_token: str) -> GuestCheckoutSessionInfo | None:
        guest = self._find_guest_session(session_token, lock=False)
        return guest.to_dto() if guest else None

    def placed_order_for(self, payment_transaction_id: UUID) -> PlacedOrderInfo | None:
        placed = self._find_placed_order(payment_transaction_id)
        return placed.to_dto() if placed else None

    # =========================================================================
    # Internals
    # =========================================================================

    def _apply(self, event: GatewayEvent, key: str, actor_id: UUID) -> WebhookOutcome:
        incoming = self.map_status(event.status)
        self._ledger.projection.lock_order(event.order_id)

        txn = self._find_transaction(key, lock=True)
        created = False
        if txn is None:
            txn, created = self._insert_transaction(event, key, incoming, actor_id)

        if created:
            write = self._write_ledger_entry(event, txn, incoming, actor_id)
            txn.ledger_entry_id = write.entry_id
            self.session.flush()
            return self._finish(event, txn, write.entry_id, actor_id)

        self._check_same_payment(event, txn, key)
        current = PaymentTransactionStatus(txn.status)
        if incoming == current or incoming == PaymentTransactionStatus.PENDING:
            # Redelivery, or a stale pending notice for a settled payment.
            txn.event_count += 1
            txn.last_event_at = self.clock.now()
            self.session.flush()
            logger.info(
                "webhook_duplicate_ignored",
                extra={"current_status": current.value, "incoming_status": incoming.value},
            )
            return WebhookOutcome(
                success=True,
                idempotency_key=key,
                payment_status=current,
                duplicate=True,
                payment_transaction_id=txn.id,
                ledger_entry_id=txn.ledger_entry_id,
            )

        if PAYMENT_TRANSACTION_WORKFLOW.is_terminal(current.value):
            raise PaymentStateConflictError(key, current.value, incoming.value)

        txn.status = PAYMENT_TRANSACTION_WORKFLOW.next_state(current.value, _ACTIONS[incoming])
        self._stamp(txn, incoming)
        txn.event_count += 1
        txn.gateway_response = self._merged_response(txn.gateway_response, event)
        if event.gateway_transaction_id and not txn.gateway_transaction_id:
            txn.gateway_transaction_id = event.gateway_transaction_id
        txn.updated_by_id = actor_id
        self._ledger.transition(
            txn.ledger_entry_id,
            _LEDGER_STATUS[incoming],
            actor_id,
            gateway_transaction_id=event.gateway_transaction_id,
        )
        self.session.flush()
        return self._finish(event, txn, txn.ledger_entry_id, actor_id)

    @staticmethod
    def _check_same_payment(event: GatewayEvent, txn: PaymentTransactionModel, key: str) -> None:
        """A known key must keep describing the same money movement."""
        recorded = (
            ("order_id", txn.order_id, event.order_id),
            ("currency", txn.currency, event.currency),
            ("amount", Decimal(txn.amount), event.amount),
        )
        for field, stored, incoming in recorded:
            if stored != incoming:
                raise PaymentDetailsMismatchError(key, field, stored, incoming)

    def _finish(
        self,
        event: GatewayEvent,
        txn: PaymentTransactionModel,
        ledger_entry_id: UUID,
        actor_id: UUID,
    ) -> WebhookOutcome:
        status = PaymentTransactionStatus(txn.status)
        guest_updated = self._resolve_guest_session(event, txn, status, actor_id)
        placed_id = None
        if event.create_order and status == PaymentTransactionStatus.COMPLETED:
            placed_id = self._place_order(event, txn, actor_id).id
        return WebhookOutcome(
            success=True,
            idempotency_key=txn.idempotency_key,
            payment_status=status,
            payment_transaction_id=txn.id,
            ledger_entry_id=ledger_entry_id,
            transaction_recorded=True,
            ledger_written=True,
            projection_updated=True,
            guest_session_updated=guest_updated,
            placed_order_id=placed_id,
        )

    def _insert_transaction(
        self,
        event: GatewayEvent,
        key: str,
        status: PaymentTransactionStatus,
        actor_id: UUID,
    ) -> tuple[PaymentTransactionModel, bool]:
        now = self.clock.now()
        savepoint = self.session.begin_nested()
        try:
            txn = PaymentTransactionModel(
                idempotency_key=key,
                order_id=event.order_id,
                transaction_id=event.transaction_id,
                gateway_transaction_id=event.gateway_transaction_id,
                amount=to_money(event.amount),
                currency=validate_currency(event.currency),
                status=status.value,
                payment_method=event.payment_method,
                gateway_code=event.gateway_code,
                gateway_response=self._merged_response(None, event),
                event_count=1,
                last_event_at=now,
                created_by_id=actor_id,
            )
            self._stamp(txn, status)
            self.session.add(txn)
            self.session.flush()
            savepoint.commit()
            return txn, True
        except IntegrityError:
            # Another delivery of the same event inserted first.
            savepoint.rollback()
            logger.info("webhook_concurrent_delivery")
            existing = self._find_transaction(key, lock=True)
            if existing is None:
                raise
            return existing, False

    def _write_ledger_entry(
        self,
        event: GatewayEvent,
        txn: PaymentTransactionModel,
        status: PaymentTransactionStatus,
        actor_id: UUID,
    ) -> LedgerWriteResult:
        metadata: dict[str, Any] = {
            "webhook_status": event.status,
            "payment_transaction_id": str(txn.id),
            "transaction_id": event.transaction_id,
        }
        if event.gateway_response is not None:
            metadata["gateway_response"] = response_to_metadata(event.gateway_response)
        return self._ledger.write(
            order_id=event.order_id,
            entry_type=LedgerEntryType.CUSTOMER_PAYMENT,
            amount=event.amount,
            currency=event.currency,
            actor_id=actor_id,
            status=_LEDGER_STATUS[status],
            payment_method=event.payment_method,
            gateway_code=event.gateway_code,
            gateway_transaction_id=event.gateway_transaction_id,
            reference_number=event.transaction_id,
            exchange_rate=event.exchange_rate,
            idempotency_key=txn.idempotency_key,
            notes=f"Payment webhook: {event.status}",
            metadata=metadata,
        )

    def _resolve_guest_session(
        self,
        event: GatewayEvent,
        txn: PaymentTransactionModel,
        status: PaymentTransactionStatus,
        actor_id: UUID,
    ) -> bool:
        if not event.guest_session_token or status == PaymentTransactionStatus.PENDING:
            return False
        guest = self._find_guest_session(event.guest_session_token, lock=True)
        if guest is None or guest.status != GuestSessionStatus.ACTIVE.value:
            logger.info("guest_session_not_active", extra={"has_session": guest is not None})
            return False
        action = "complete" if status == PaymentTransactionStatus.COMPLETED else "expire"
        guest.status = GUEST_SESSION_WORKFLOW.next_state(guest.status, action)
        guest.resolved_at = self.clock.now()
        guest.payment_transaction_id = txn.id
        guest.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "guest_session_resolved",
            extra={"guest_session_id": str(guest.id), "status": guest.status},
        )
        return True

    def _place_order(
        self,
        event: GatewayEvent,
        txn: PaymentTransactionModel,
        actor_id: UUID,
    ) -> PlacedOrderModel:
        existing = self._find_placed_order(txn.id)
        if existing is not None:
            return existing
        numbering = self.config.numbering
        placed = PlacedOrderModel(
            order_number=self._sequence.next_document_number(
                numbering.placed_order_prefix, self.clock.today().year, numbering.width,
            ),
            order_id=txn.order_id,
            payment_transaction_id=txn.id,
            total_amount=txn.amount,
            currency=txn.currency,
            payment_method=txn.payment_method,
            customer_email=event.customer_email,
            customer_name=event.customer_name,
            customer_phone=event.customer_phone,
            created_by_id=actor_id,
        )
        self.session.add(placed)
        self.session.flush()
        logger.info(
            "placed_order_created",
            extra={
                "placed_order_id": str(placed.id),
                "order_number": placed.order_number,
                "customer_email": placed.customer_email,
            },
        )
        return placed

    def _stamp(self, txn: PaymentTransactionModel, status: PaymentTransactionStatus) -> None:
        now = self.clock.now()
        txn.last_event_at = now
        if status == PaymentTransactionStatus.COMPLETED:
            txn.completed_at = now
        elif status == PaymentTransactionStatus.FAILED:
            txn.failed_at = now

    @staticmethod
    def _merged_response(current: dict[str, Any] | None, event: GatewayEvent) -> dict[str, Any] | None:
        if event.gateway_response is None:
            return current
        incoming = response_to_metadata(event.gateway_response)
        if not current or current.get("kind") != incoming.get("kind"):
            return incoming
        if incoming.get("kind") == "generic":
            return {**current, "fields": {**current.get("fields", {}), **incoming.get("fields", {})}}
        return {**current, **incoming}

    def _find_transaction(self, key: str, lock: bool) -> PaymentTransactionModel | None:
        query = select(PaymentTransactionModel).where(PaymentTransactionModel.idempotency_key == key)
        if lock:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def _find_guest_session(self, token: str, lock: bool) -> GuestCheckoutSessionModel | None:
        query = select(GuestCheckoutSessionModel).where(
            GuestCheckoutSessionModel.session_token == token.strip()
        )
        if lock:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def _find_placed_order(self, payment_transaction_id: UUID) -> PlacedOrderModel | None:
        return self.session.execute(
            select(PlacedOrderModel).where(PlacedOrderModel.payment_transaction_id == payment_transaction_id)
        ).scalar_one_or_none()
