"""
payment_modules.refunds.service
===============================

Responsibility:
    Orchestrates the refund workflow: create (validate against the Ledger
    Store and allocate LIFO across prior payments), approve, reject,
    cancel, execute items against gateway outcomes and aggregate the
    request status.

Architecture:
    Module layer.  Writes money movements only through ``LedgerService``,
    which pairs every refund entry with its journal posting and
    recomputes the order projection.  Flushes; the caller commits.

Invariants enforced:
    - Requested amount <= amount paid to date, computed from completed
      ledger entries (never from the stored projection).
    - Per payment entry: sum of non-cancelled item allocations <= its base
      amount, so no payment is refunded twice.
    - Sum of item allocations <= the request's approved amount.
    - A failed gateway refund writes nothing to the ledger.
    - Executing a completed item again with the same gateway refund id is a
      no-op; with a different id it is a conflict.

Failure modes:
    - RefundExceedsPaidError / RefundExceedsRefundableError on create.
    - ApprovedAmountExceedsAllocationError on approve.
    - InvalidTransitionError for actions the current state does not allow.
    - RefundItemConflictError on a contradicting re-execution.
    - AccessDeniedError from the access policy.

Audit relevance:
    Every transition is logged (``refund_request_created``,
    ``refund_request_approved``, ``refund_item_completed``, ...).
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import (
    ZERO,
    currency_decimal_places,
    enum_value,
    require_minor_units,
    round_money,
    to_money,
    validate_currency,
)
from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock
from payment_kernel.exceptions import (
    ApprovedAmountExceedsAllocationError,
    CurrencyMismatchError,
    InvalidAmountError,
    PaymentEntryNotRefundableError,
    RefundExceedsPaidError,
    RefundExceedsRefundableError,
    RefundItemConflictError,
    RefundItemNotFoundError,
    RefundRequestNotFoundError,
)
from payment_kernel.logging_config import LogContext, get_logger
from payment_kernel.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from payment_kernel.services.base import BaseService
from payment_kernel.services.ledger_service import LedgerService
from payment_kernel.services.sequence_service import SequenceService, SequenceSource
from payment_kernel.utils.idempotency import generate_idempotency_key
from payment_modules.refunds.allocation import RefundCandidate, allocate_lifo, trim_to
from payment_modules.refunds.models import (
    GatewayOutcome,
    RefundableBalance,
    RefundItemInfo,
    RefundItemStatus,
    RefundMethod,
    RefundReason,
    RefundRequestInfo,
    RefundRequestStatus,
    RefundType,
)
from payment_modules.refunds.orm import RefundItemModel, RefundRequestModel
from payment_modules.refunds.workflows import (
    AGGREGATE_ACTIONS,
    GATEWAY_ACCEPTED,
    OPEN_RESERVING_ITEM_STATUSES,
    REFUND_ITEM_WORKFLOW,
    REFUND_REQUEST_WORKFLOW,
    aggregate_request_status,
)

logger = get_logger("modules.refunds.service")


class RefundService(BaseService):
    """
    Refund request lifecycle.

    Contract:
        Every public mutator flushes and returns a fresh DTO.  Customers
        may create and cancel refunds on their own orders; approval,
        rejection and execution require an administrator.

    Non-goals:
        - Does NOT call payment gateways; callers report gateway outcomes
          through ``execute_item``.
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
    # Create
    # =========================================================================

    def create(
        self,
        *,
        order_id: UUID,
        refund_type: RefundType | str,
        amount: Decimal,
        currency: str,
        reason_code: RefundReason | str,
        principal: Principal,
        reason_description: str | None = None,
        refund_method: RefundMethod | str = RefundMethod.ORIGINAL_PAYMENT_METHOD,
        payment_entry_ids: Sequence[UUID] | None = None,
        customer_notes: str | None = None,
        internal_notes: str | None = None,
    ) -> RefundRequestInfo:
        """
        Validate and allocate a refund request.

        Postconditions:
            - One pending item per payment entry the LIFO walk touched.
            - sum(item allocations) == amount.
        """
        refund_type = RefundType(refund_type)
        reason_code = RefundReason(reason_code)
        refund_method = RefundMethod(refund_method)
        currency = validate_currency(currency)
        amount = require_minor_units(to_money(amount), currency)
        if amount <= ZERO:
            raise InvalidAmountError(amount, "refund amount must be positive")

        order = self._ledger.projection.lock_order(order_id)
        self._access.ensure_order_access(principal, order)
        if currency != order.currency:
            raise CurrencyMismatchError(order.currency, currency)

        paid = self._ledger.projection.amount_paid_from_ledger(order_id)
        if amount > paid:
            raise RefundExceedsPaidError(order_id, amount, paid)

        payments = self._refundable_payments(order_id, payment_entry_ids)
        balances = self._balances(payments)
        candidates = [
            RefundCandidate(
                payment_entry_id=p.id,
                recorded_at=p.recorded_at,
                sequence=p.sequence,
                unrefunded=balances[p.id].unrefunded,
            )
            for p in payments
        ]
        plan = allocate_lifo(amount, candidates)
        if not plan.is_complete:
            refundable = sum((b.unrefunded for b in balances.values()), ZERO)
            raise RefundExceedsRefundableError(order_id, amount, refundable)

        now = self.clock.now()
        request = RefundRequestModel(
            request_number=self._sequence.next_document_number(
                self.config.numbering.refund_request_prefix,
                now.year,
                self.config.numbering.width,
            ),
            order_id=order_id,
            refund_type=refund_type.value,
            status=REFUND_REQUEST_WORKFLOW.initial_state,
            requested_amount=amount,
            currency=currency,
            reason_code=reason_code.value,
            reason_description=reason_description,
            refund_method=refund_method.value,
            customer_notes=customer_notes,
            internal_notes=internal_notes,
            requested_by_id=principal.actor_id,
            requested_at=now,
            created_by_id=principal.actor_id,
        )
        self.session.add(request)
        self.session.flush()

        by_id = {p.id: p for p in payments}
        for position, line in enumerate(plan.lines, start=1):
            payment = by_id[line.payment_entry_id]
            rate = Decimal(payment.exchange_rate)
            self.session.add(
                RefundItemModel(
                    refund_request_id=request.id,
                    payment_entry_id=payment.id,
                    allocation_order=position,
                    allocated_amount=line.allocated,
                    currency=currency,
                    payment_amount=_payment_amount(line.allocated, rate, payment.currency),
                    payment_currency=payment.currency,
                    exchange_rate=rate,
                    gateway_code=payment.gateway_code,
                    payment_method=payment.payment_method,
                    status=REFUND_ITEM_WORKFLOW.initial_state,
                    created_by_id=principal.actor_id,
                )
            )
        self.session.flush()
        self.session.refresh(request, ["items"])

        logger.info(
            "refund_request_created",
            extra={
                "refund_request_id": str(request.id),
                "request_number": request.request_number,
                "order_id": str(order_id),
                "amount": str(amount),
                "item_count": len(plan.lines),
                "actor_id": str(principal.actor_id),
            },
        )
        return request.to_dto()

    # =========================================================================
    # Review
    # =========================================================================

    def approve(
        self,
        request_id: UUID,
        principal: Principal,
        approved_amount: Decimal | None = None,
        notes: str | None = None,
    ) -> RefundRequestInfo:
        """
        pending -> approved; items pending -> processing.

        A lower ``approved_amount`` trims allocations in allocation order;
        items trimmed to zero are cancelled.
        """
        self._access.ensure_admin(principal, f"refund_request:{request_id}")
        request = self._load_request(request_id)
        next_status = REFUND_REQUEST_WORKFLOW.next_state(request.status, "approve")

        live = [i for i in request.items if i.status != RefundItemStatus.CANCELLED.value]
        allocated = sum((Decimal(i.allocated_amount) for i in live), ZERO)
        approved = allocated if approved_amount is None else to_money(approved_amount)
        require_minor_units(approved, request.currency)
        if approved <= ZERO:
            raise InvalidAmountError(approved, "approved amount must be positive")
        if approved > allocated:
            raise ApprovedAmountExceedsAllocationError(request.id, approved, allocated)

        now = self.clock.now()
        for item, amount in zip(live, trim_to([Decimal(i.allocated_amount) for i in live], approved)):
            if amount == ZERO:
                item.status = REFUND_ITEM_WORKFLOW.next_state(item.status, "cancel")
                item.failure_reason = "trimmed by approval"
            else:
                if amount != Decimal(item.allocated_amount):
                    item.allocated_amount = amount
                    item.payment_amount = _payment_amount(
                        amount, Decimal(item.exchange_rate), item.payment_currency,
                    )
                item.status = REFUND_ITEM_WORKFLOW.next_state(item.status, "approve")
            item.updated_by_id = principal.actor_id

        request.status = next_status
        request.approved_amount = approved
        request.reviewed_by_id = principal.actor_id
        request.reviewed_at = now
        if notes:
            request.internal_notes = f"{request.internal_notes}\n{notes}" if request.internal_notes else notes
        request.updated_by_id = principal.actor_id
        self.session.flush()

        logger.info(
            "refund_request_approved",
            extra={
                "refund_request_id": str(request.id),
                "approved_amount": str(approved),
                "requested_amount": str(request.requested_amount),
                "actor_id": str(principal.actor_id),
            },
        )
        return request.to_dto()

    def reject(self, request_id: UUID, principal: Principal, reason: str) -> RefundRequestInfo:
        """pending -> rejected; every item is cancelled."""
        self._access.ensure_admin(principal, f"refund_request:{request_id}")
        request = self._load_request(request_id)
        request.status = REFUND_REQUEST_WORKFLOW.next_state(request.status, "reject")
        request.rejection_reason = reason
        request.reviewed_by_id = principal.actor_id
        request.reviewed_at = self.clock.now()
        request.updated_by_id = principal.actor_id
        self._cancel_open_items(request, principal, reason)
        self.session.flush()
        logger.info(
            "refund_request_rejected",
            extra={"refund_request_id": str(request.id), "reason": reason},
        )
        return request.to_dto()

    def cancel(self, request_id: UUID, principal: Principal, reason: str) -> RefundRequestInfo:
        """pending/approved -> cancelled.  The requesting customer or an admin."""
        request = self._load_request(request_id)
        order = self._ledger.projection.get_order(request.order_id)
        self._access.ensure_order_access(principal, order)
        request.status = REFUND_REQUEST_WORKFLOW.next_state(request.status, "cancel")
        request.cancelled_at = self.clock.now()
        request.cancellation_reason = reason
        request.updated_by_id = principal.actor_id
        self._cancel_open_items(request, principal, reason)
        self.session.flush()
        logger.info(
            "refund_request_cancelled",
            extra={"refund_request_id": str(request.id), "reason": reason},
        )
        return request.to_dto()

    # =========================================================================
    # Execution
    # =========================================================================

    def execute_item(
        self,
        item_id: UUID,
        principal: Principal,
        *,
        gateway_refund_id: str | None,
        outcome: GatewayOutcome | str,
        gateway_response: dict[str, Any] | None = None,
        failure_reason: str | None = None,
    ) -> RefundItemInfo:
        """
        Apply a gateway outcome to one item.

        Success writes a negative ledger entry (and journal posting) for
        the allocation and completes the item.  Failure marks the item
        failed and leaves the ledger untouched; it can be executed again.
        """
        self._access.ensure_admin(principal, f"refund_item:{item_id}")
        outcome = GatewayOutcome(outcome)
        item = self._load_item(item_id)
        request = self._load_request(item.refund_request_id)

        if item.status == RefundItemStatus.COMPLETED.value:
            if outcome == GatewayOutcome.SUCCESS and gateway_refund_id == item.gateway_refund_id:
                logger.info(
                    "refund_item_duplicate_execution",
                    extra={"refund_item_id": str(item.id), "gateway_refund_id": gateway_refund_id},
                )
                return item.to_dto()
            raise RefundItemConflictError(item.id, item.gateway_refund_id, gateway_refund_id)

        satisfied = frozenset({GATEWAY_ACCEPTED.name}) if outcome == GatewayOutcome.SUCCESS else frozenset()
        transition = REFUND_ITEM_WORKFLOW.transition_for(item.status, "execute", satisfied)
        if request.status != RefundRequestStatus.PROCESSING.value:
            request.status = REFUND_REQUEST_WORKFLOW.next_state(request.status, "start_processing")
            request.processed_at = self.clock.now()

        with LogContext.bind(order_id=str(request.order_id)):
            now = self.clock.now()
            item.attempts = (item.attempts or 0) + 1
            item.gateway_refund_id = gateway_refund_id
            item.gateway_response = gateway_response
            item.processed_at = now
            item.updated_by_id = principal.actor_id

            if transition.posts_entry:
                result = self._write_refund_entry(request, item, principal.actor_id, gateway_refund_id)
                item.refund_entry_id = result.entry_id
                item.financial_transaction_id = result.financial_transaction_id
                item.failure_reason = None
                item.status = transition.to_state
                logger.info(
                    "refund_item_completed",
                    extra={
                        "refund_item_id": str(item.id),
                        "refund_entry_id": str(result.entry_id),
                        "allocated_amount": str(item.allocated_amount),
                        "gateway_refund_id": gateway_refund_id,
                    },
                )
            else:
                item.status = transition.to_state
                item.failure_reason = failure_reason or "gateway reported failure"
                logger.warning(
                    "refund_item_failed",
                    extra={
                        "refund_item_id": str(item.id),
                        "attempts": item.attempts,
                        "reason": item.failure_reason,
                    },
                )

            self.session.flush()
            self._aggregate(request, principal)
        return item.to_dto()

    def cancel_item(self, item_id: UUID, principal: Principal, reason: str) -> RefundItemInfo:
        """Release a pending, processing or failed item's allocation."""
        self._access.ensure_admin(principal, f"refund_item:{item_id}")
        item = self._load_item(item_id)
        item.status = REFUND_ITEM_WORKFLOW.next_state(item.status, "cancel")
        item.failure_reason = reason
        item.updated_by_id = principal.actor_id
        self.session.flush()
        request = self._load_request(item.refund_request_id)
        if request.status not in (RefundRequestStatus.PENDING.value, RefundRequestStatus.APPROVED.value):
            self._aggregate(request, principal)
        elif all(i.status == RefundItemStatus.CANCELLED.value for i in request.items):
            request.status = REFUND_REQUEST_WORKFLOW.next_state(request.status, "cancel")
            request.cancelled_at = self.clock.now()
            request.cancellation_reason = reason
        self.session.flush()
        logger.info(
            "refund_item_cancelled",
            extra={"refund_item_id": str(item.id), "reason": reason},
        )
        return item.to_dto()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_request(self, request_id: UUID, principal: Principal) -> RefundRequestInfo:
        request = self._load_request(request_id, lock=False)
        order = self._ledger.projection.get_order(request.order_id)
        self._access.ensure_order_access(principal, order)
        return request.to_dto()

    def list_for_order(self, order_id: UUID, principal: Principal) -> list[RefundRequestInfo]:
        order = self._ledger.projection.get_order(order_id)
        self._access.ensure_order_access(principal, order)
        rows = self.session.execute(
            select(RefundRequestModel)
            .where(RefundRequestModel.order_id == order_id)
            .order_by(RefundRequestModel.requested_at, RefundRequestModel.request_number)
        ).scalars()
        return [r.to_dto() for r in rows]

    def refundable_balances(self, order_id: UUID) -> list[RefundableBalance]:
        """Unrefunded amount per completed customer payment, newest first."""
        self._ledger.projection.get_order(order_id)
        payments = self._ledger.payment_entries_newest_first(order_id)
        balances = self._balances(payments)
        return [balances[p.id] for p in payments]

    # =========================================================================
    # Internals
    # =========================================================================

    def _refundable_payments(
        self,
        order_id: UUID,
        payment_entry_ids: Sequence[UUID] | None,
    ) -> list[LedgerEntry]:
        payments = self._ledger.payment_entries_newest_first(order_id)
        if not payment_entry_ids:
            return payments
        by_id = {p.id: p for p in payments}
        chosen = []
        for entry_id in payment_entry_ids:
            if entry_id not in by_id:
                raise PaymentEntryNotRefundableError(
                    entry_id, "not a completed customer payment of this order",
                )
            chosen.append(by_id[entry_id])
        return chosen

    def _balances(self, payments: Sequence[LedgerEntry]) -> dict[UUID, RefundableBalance]:
        """
        Unrefunded = base amount less refund entries already in the ledger
        against the payment (whoever wrote them) less open items.  Completed
        items are counted through their ledger entries.
        """
        ids = [p.id for p in payments]
        refunded = self._ledger.refunded_by_payment(ids)
        open_items: dict[UUID, Decimal] = {}
        if ids:
            rows = self.session.execute(
                select(RefundItemModel.payment_entry_id, func.sum(RefundItemModel.allocated_amount))
                .where(
                    RefundItemModel.payment_entry_id.in_(ids),
                    RefundItemModel.status.in_(OPEN_RESERVING_ITEM_STATUSES),
                )
                .group_by(RefundItemModel.payment_entry_id)
            ).all()
            open_items = {entry_id: Decimal(total) for entry_id, total in rows}
        balances = {}
        for p in payments:
            base = Decimal(p.base_amount)
            held = refunded.get(p.id, ZERO) + open_items.get(p.id, ZERO)
            balances[p.id] = RefundableBalance(
                payment_entry_id=p.id,
                base_amount=base,
                reserved=held,
                unrefunded=max(base - held, ZERO),
            )
        return balances

    def _write_refund_entry(
        self,
        request: RefundRequestModel,
        item: RefundItemModel,
        actor_id: UUID,
        gateway_refund_id: str | None,
    ):
        payment = self._ledger.get_entry(item.payment_entry_id)
        if request.refund_method == RefundMethod.ORIGINAL_PAYMENT_METHOD.value:
            method = payment.payment_method
        else:
            method = request.refund_method
        return self._ledger.write(
            order_id=request.order_id,
            entry_type=RefundType(request.refund_type).ledger_entry_type,
            amount=Decimal(item.payment_amount),
            currency=item.payment_currency,
            exchange_rate=Decimal(item.exchange_rate),
            base_amount=Decimal(item.allocated_amount),
            actor_id=actor_id,
            status=LedgerEntryStatus.COMPLETED,
            payment_method=method,
            gateway_code=payment.gateway_code,
            gateway_transaction_id=gateway_refund_id,
            reference_number=request.request_number,
            idempotency_key=generate_idempotency_key("refunds", "item", item.id),
            related_entry_id=payment.id,
            notes=f"Refund for request {request.request_number}",
            metadata={"refund_request_id": str(request.id), "refund_item_id": str(item.id)},
        )

    def _aggregate(self, request: RefundRequestModel, principal: Principal) -> None:
        self.session.refresh(request, ["items"])
        target = aggregate_request_status(i.status for i in request.items)
        if target is None or target.value == request.status:
            return
        request.status = REFUND_REQUEST_WORKFLOW.next_state(request.status, AGGREGATE_ACTIONS[target])
        request.updated_by_id = principal.actor_id
        now = self.clock.now()
        if target == RefundRequestStatus.COMPLETED:
            request.completed_at = now
        elif target == RefundRequestStatus.CANCELLED:
            request.cancelled_at = now
        self.session.flush()
        logger.info(
            "refund_request_settled",
            extra={"refund_request_id": str(request.id), "status": target.value},
        )

    def _cancel_open_items(self, request: RefundRequestModel, principal: Principal, reason: str) -> None:
        for item in request.items:
            if item.status in (RefundItemStatus.COMPLETED.value, RefundItemStatus.CANCELLED.value):
                continue
            item.status = REFUND_ITEM_WORKFLOW.next_state(item.status, "cancel")
            item.failure_reason = reason
            item.updated_by_id = principal.actor_id

    def _load_request(self, request_id: UUID, lock: bool = True) -> RefundRequestModel:
        query = select(RefundRequestModel).where(RefundRequestModel.id == request_id)
        if lock:
            query = query.with_for_update()
        request = self.session.execute(query).scalar_one_or_none()
        if request is None:
            raise RefundRequestNotFoundError(request_id)
        return request

    def _load_item(self, item_id: UUID) -> RefundItemModel:
        item = self.session.execute(
            select(RefundItemModel).where(RefundItemModel.id == item_id).with_for_update()
        ).scalar_one_or_none()
        if item is None:
            raise RefundItemNotFoundError(item_id)
        return item


def _payment_amount(allocated: Decimal, rate: Decimal, currency: str) -> Decimal:
    """Settlement-currency allocation expressed in the payment's currency."""
    if rate == Decimal("1"):
        return allocated
    return round_money(allocated / rate, currency_decimal_places(currency))
