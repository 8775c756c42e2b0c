"""
payment_modules.credit_notes.service
====================================

Responsibility:
    Store-credit lifecycle: issue, approve, apply to an order as an
    alternate payment source, reverse an application, cancel, hold and
    release, extend validity and expire notes past their validity window.

Architecture:
    Module layer.  Applications and their reversals are money movements
    and go through ``LedgerService.write`` (``credit_applied`` in,
    ``adjustment`` out) so the order projection follows.  Issuance and
    cancellation touch only the journal.  Flushes; the caller commits.

Invariants enforced:
    - amount_used == sum of non-reversed application amounts, and
      amount_used <= amount.
    - Application amount = min(requested or available, available, order
      unpaid balance); nothing is written when that is not positive.
    - Only active / partially_used notes inside their validity window can
      be applied.
    - Every state change appends one ``credit_note_history`` row.

Failure modes:
    - CreditNoteNotUsableError, CreditNoteExpiredError,
      MinimumOrderValueError, NothingToApplyError, CurrencyMismatchError
      on apply.
    - CreditNoteInUseError when cancelling a note with usage.
    - AccessDeniedError from the access policy.

Audit relevance:
    ``credit_note_*`` log events plus the append-only history table.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import (
    ZERO,
    enum_value,
    require_minor_units,
    round_money,
    to_money,
    validate_currency,
)
from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock
from payment_kernel.exceptions import (
    AccessDeniedError,
    CreditNoteApplicationNotFoundError,
    CreditNoteExpiredError,
    CreditNoteInUseError,
    CreditNoteNotFoundError,
    CreditNoteNotUsableError,
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidTransitionError,
    MinimumOrderValueError,
    NothingToApplyError,
    ValidationError,
)
from payment_kernel.logging_config import get_logger
from payment_kernel.models.journal import FinancialTransaction, ReferenceType, TransactionStatus
from payment_kernel.models.ledger import LedgerEntryType
from payment_kernel.services.base import BaseService
from payment_kernel.services.ledger_service import LedgerService
from payment_kernel.services.sequence_service import SequenceService, SequenceSource
from payment_kernel.utils.idempotency import generate_idempotency_key
from payment_modules.credit_notes.models import (
    USABLE_STATUSES,
    ApplicationStatus,
    CreditApplicationResult,
    CreditNoteAction,
    CreditNoteApplicationInfo,
    CreditNoteHistoryInfo,
    CreditNoteInfo,
    CreditNoteStatus,
    CreditNoteType,
)
from payment_modules.credit_notes.orm import (
    CreditNoteApplicationModel,
    CreditNoteHistoryModel,
    CreditNoteModel,
)
from payment_modules.credit_notes.workflows import (
    CREDIT_NOTE_WORKFLOW,
    EXHAUSTED,
    EXPIRABLE_STATUSES,
    UNUSED,
)

logger = get_logger("modules.credit_notes.service")

# credit_applied posts Dr 5200 / Cr 2110; the compensation runs the other way.
_REVERSAL_ACCOUNTS_RULE = "credit_applied"


class CreditNoteService(BaseService):
    """
    Credit note manager.

    Contract:
        Issuing, approving, cancelling, holding, extending and reversing
        require an administrator.  Applying and viewing require access to
        the note (owner or admin); applying also requires access to the
        order.

    Non-goals:
        - Does NOT enforce ``allowed_categories`` / ``allowed_countries``;
          they are recorded for the order service.
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
    # Issue / approve
    # =========================================================================

    def issue(
        self,
        *,
        customer_id: UUID,
        amount: Decimal,
        currency: str,
        reason: str,
        principal: Principal,
        description: str | None = None,
        order_id: UUID | None = None,
        refund_request_id: UUID | None = None,
        valid_days: int | None = None,
        minimum_order_value: Decimal | None = None,
        auto_approve: bool = False,
        note_type: CreditNoteType | str = CreditNoteType.CREDIT,
        exchange_rate: Decimal | None = None,
        allowed_categories: list[str] | None = None,
        allowed_countries: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditNoteInfo:
        """
        Create a note, ``draft`` unless ``auto_approve`` (then ``active``
        with the issuance journal posted).
        """
        self._access.ensure_admin(principal, "credit_note:issue")
        currency = validate_currency(currency)
        amount = require_minor_units(to_money(amount), currency)
        if amount <= ZERO:
            raise InvalidAmountError(amount, "credit note amount must be positive")
        valid_days = self.config.credit_notes.default_valid_days if valid_days is None else valid_days
        if valid_days < 1:
            raise ValidationError(f"valid_days must be positive, got {valid_days}")
        rate = Decimal("1") if exchange_rate is None else to_money(exchange_rate)
        if rate <= ZERO:
            raise InvalidAmountError(rate, "exchange rate must be positive")
        if minimum_order_value is not None:
            minimum_order_value = to_money(minimum_order_value)

        now = self.clock.now()
        today = self.clock.today()
        note = CreditNoteModel(
            id=uuid4(),
            note_number=self._sequence.next_document_number(
                self.config.numbering.credit_note_prefix,
                now.year,
                self.config.numbering.width,
            ),
            note_type=CreditNoteType(note_type).value,
            customer_id=customer_id,
            order_id=order_id,
            refund_request_id=refund_request_id,
            amount=amount,
            currency=currency,
            exchange_rate=rate,
            base_amount=round_money(amount * rate),
            amount_used=ZERO,
            reason=reason,
            description=description,
            valid_from=today,
            valid_until=today + timedelta(days=valid_days),
            minimum_order_value=minimum_order_value,
            allowed_categories=allowed_categories,
            allowed_countries=allowed_countries,
            status=CREDIT_NOTE_WORKFLOW.initial_state,
            issued_by_id=principal.actor_id,
            issued_at=now,
            note_metadata=metadata,
            created_by_id=principal.actor_id,
        )
        self.session.add(note)
        self.session.flush()
        self._history(
            note, CreditNoteAction.CREATED, principal,
            previous=None,
            description="Credit note created",
            metadata={"amount": str(amount), "currency": currency, "reason": reason},
        )

        if auto_approve:
            self._activate(note, principal)

        logger.info(
            "credit_note_issued",
            extra={
                "credit_note_id": str(note.id),
                "note_number": note.note_number,
                "customer_id": str(customer_id),
                "amount": str(amount),
                "currency": currency,
                "status": note.status,
            },
        )
        return note.to_dto()

    def approve(self, note_id: UUID, principal: Principal) -> CreditNoteInfo:
        """draft -> active; posts the issuance journal (Dr 5200 / Cr 2110)."""
        self._access.ensure_admin(principal, f"credit_note:{note_id}")
        note = self._load_note(note_id)
        self._activate(note, principal)
        logger.info(
            "credit_note_approved",
            extra={"credit_note_id": str(note.id), "note_number": note.note_number},
        )
        return note.to_dto()

    # =========================================================================
    # Apply / reverse
    # =========================================================================

    def apply(
        self,
        note_id: UUID,
        order_id: UUID,
        principal: Principal,
        amount: Decimal | None = None,
    ) -> CreditApplicationResult:
        """
        Apply store credit to an order.

        Postconditions:
            - One ``credit_applied`` ledger entry for the applied amount.
            - amount_used grows by the same amount; status moves to
              partially_used or fully_used.
        """
        note = self._load_note(note_id)
        self._access.ensure_credit_note_access(principal, note)
        order = self._ledger.projection.lock_order(order_id)
        self._access.ensure_order_access(principal, order)
        if not principal.is_admin and order.customer_id != note.customer_id:
            raise AccessDeniedError(
                principal.actor_id, f"credit_note:{note.note_number}",
                "note does not belong to the order's customer",
            )

        if note.status not in USABLE_STATUSES:
            raise CreditNoteNotUsableError(note.note_number, note.status)
        today = self.clock.today()
        if note.valid_until is not None and note.valid_until < today:
            raise CreditNoteExpiredError(note.note_number, note.valid_until)
        if note.currency != order.currency:
            raise CurrencyMismatchError(order.currency, note.currency)

        available = note.amount_available
        requested = available if amount is None else require_minor_units(to_money(amount), note.currency)
        if requested <= ZERO:
            raise InvalidAmountError(requested, "application amount must be positive")
        applied = min(requested, available, order.unpaid_balance)
        if applied <= ZERO:
            reason = "credit note exhausted" if available <= ZERO else "order has no unpaid balance"
            raise NothingToApplyError(note.note_number, reason)
        if note.minimum_order_value is not None and Decimal(order.total_owed) < Decimal(note.minimum_order_value):
            raise MinimumOrderValueError(
                note.note_number, Decimal(order.total_owed), Decimal(note.minimum_order_value),
            )

        now = self.clock.now()
        application = CreditNoteApplicationModel(
            id=uuid4(),
            credit_note_id=note.id,
            order_id=order_id,
            applied_amount=applied,
            currency=note.currency,
            status=ApplicationStatus.APPLIED.value,
            applied_by_id=principal.actor_id,
            applied_at=now,
            created_by_id=principal.actor_id,
        )
        result = self._ledger.write(
            order_id=order_id,
            entry_type=LedgerEntryType.CREDIT_APPLIED,
            amount=applied,
            currency=note.currency,
            actor_id=principal.actor_id,
            payment_method="credit_note",
            reference_number=note.note_number,
            idempotency_key=generate_idempotency_key("credit_notes", "application", application.id),
            notes=f"Credit note applied: {note.note_number}",
            metadata={"credit_note_id": str(note.id), "application_id": str(application.id)},
        )
        application.ledger_entry_id = result.entry_id
        application.financial_transaction_id = result.financial_transaction_id
        self.session.add(application)

        previous = note.status
        note.amount_used = Decimal(note.amount_used) + applied
        satisfied = frozenset({EXHAUSTED.name}) if note.amount_available <= ZERO else frozenset()
        note.status = CREDIT_NOTE_WORKFLOW.next_state(note.status, "apply", satisfied)
        note.updated_by_id = principal.actor_id
        self.session.flush()

        action = (
            CreditNoteAction.APPLIED
            if note.status == CreditNoteStatus.FULLY_USED.value
            else CreditNoteAction.PARTIALLY_APPLIED
        )
        self._history(
            note, action, principal,
            previous=previous,
            amount_change=applied,
            description=f"Applied to order {order.order_reference or order.id}",
            metadata={"order_id": str(order_id), "application_id": str(application.id)},
        )

        logger.info(
            "credit_note_applied",
            extra={
                "credit_note_id": str(note.id),
                "order_id": str(order_id),
                "amount_applied": str(applied),
                "remaining_credit": str(note.amount_available),
                "ledger_entry_id": str(result.entry_id),
            },
        )
        return CreditApplicationResult(application=application.to_dto(), note=note.to_dto())

    def reverse_application(
        self,
        application_id: UUID,
        principal: Principal,
        reason: str,
    ) -> CreditNoteApplicationInfo:
        """
        Undo an application with a compensating ``adjustment`` entry
        (Dr 2110 / Cr 5200) and give the credit back to the note.
        """
        self._access.ensure_admin(principal, f"credit_note_application:{application_id}")
        application = self.session.execute(
            select(CreditNoteApplicationModel)
            .where(CreditNoteApplicationModel.id == application_id)
            .with_for_update()
        ).scalar_one_or_none()
        if application is None:
            raise CreditNoteApplicationNotFoundError(application_id)
        if application.status != ApplicationStatus.APPLIED.value:
            raise InvalidTransitionError("credit_note_application", application.status, "reverse")
        note = self._load_note(application.credit_note_id)

        applied = Decimal(application.applied_amount)
        debit, credit = self.config.resolve_accounts(_REVERSAL_ACCOUNTS_RULE, None)
        result = self._ledger.write(
            order_id=application.order_id,
            entry_type=LedgerEntryType.ADJUSTMENT,
            amount=applied,
            currency=application.currency,
            actor_id=principal.actor_id,
            payment_method="credit_note",
            reference_number=note.note_number,
            idempotency_key=generate_idempotency_key("credit_notes", "reversal", application.id),
            related_entry_id=application.ledger_entry_id,
            notes=f"Credit note application reversed: {reason}",
            metadata={"credit_note_id": str(note.id), "application_id": str(application.id)},
            accounts=(credit, debit),
        )

        now = self.clock.now()
        application.status = ApplicationStatus.REVERSED.value
        application.reversal_entry_id = result.entry_id
        application.reversed_by_id = principal.actor_id
        application.reversed_at = now
        application.reversal_reason = reason
        application.updated_by_id = principal.actor_id

        previous = note.status
        note.amount_used = Decimal(note.amount_used) - applied
        satisfied = frozenset({UNUSED.name}) if Decimal(note.amount_used) == ZERO else frozenset()
        note.status = CREDIT_NOTE_WORKFLOW.next_state(note.status, "reverse", satisfied)
        note.updated_by_id = principal.actor_id
        self.session.flush()

        self._history(
            note, CreditNoteAction.REVERSED, principal,
            previous=previous,
            amount_change=-applied,
            description=reason,
            metadata={"application_id": str(application.id), "order_id": str(application.order_id)},
        )
        logger.info(
            "credit_note_application_reversed",
            extra={
                "credit_note_id": str(note.id),
                "application_id": str(application.id),
                "amount": str(applied),
                "reversal_entry_id": str(result.entry_id),
            },
        )
        return application.to_dto()

    # =========================================================================
    # Administrative transitions
    # =========================================================================

    def cancel(self, note_id: UUID, principal: Principal, reason: str) -> CreditNoteInfo:
        """Cancel an unused note; a posted issuance journal is reversed."""
        self._access.ensure_admin(principal, f"credit_note:{note_id}")
        note = self._load_note(note_id)
        if Decimal(note.amount_used) > ZERO:
            raise CreditNoteInUseError(note.note_number, Decimal(note.amount_used))
        previous = note.status
        note.status = CREDIT_NOTE_WORKFLOW.next_state(note.status, "cancel", frozenset({UNUSED.name}))
        now = self.clock.now()
        note.cancelled_by_id = principal.actor_id
        note.cancelled_at = now
        note.cancellation_reason = reason
        note.updated_by_id = principal.actor_id

        reversal_id = None
        if note.issuance_transaction_id is not None:
            txn = self.session.get(FinancialTransaction, note.issuance_transaction_id)
            if txn is not None and txn.status == TransactionStatus.POSTED.value:
                reversal_id = self._ledger.journal.reverse(
                    txn.id, principal.actor_id, f"Credit note cancelled: {reason}",
                ).reversal_id
        self.session.flush()

        self._history(
            note, CreditNoteAction.CANCELLED, principal,
            previous=previous,
            description=reason,
            metadata={"reversal_transaction_id": str(reversal_id)} if reversal_id else None,
        )
        logger.info(
            "credit_note_cancelled",
            extra={"credit_note_id": str(note.id), "reason": reason},
        )
        return note.to_dto()

    def hold(self, note_id: UUID, principal: Principal, reason: str) -> CreditNoteInfo:
        self._access.ensure_admin(principal, f"credit_note:{note_id}")
        note = self._load_note(note_id)
        return self._move(note, "hold", CreditNoteAction.HELD, principal, reason)

    def release(self, note_id: UUID, principal: Principal, reason: str | None = None) -> CreditNoteInfo:
        self._access.ensure_admin(principal, f"credit_note:{note_id}")
        note = self._load_note(note_id)
        return self._move(note, "release", CreditNoteAction.RELEASED, principal, reason)

    def extend_validity(self, note_id: UUID, principal: Principal, days: int) -> CreditNoteInfo:
        """
        Push ``valid_until`` out by ``days``.  An expired note whose new
        window includes today becomes usable again.
        """
        self._access.ensure_admin(principal, f"credit_note:{note_id}")
        if days < 1:
            raise ValidationError(f"extension must be at least one day, got {days}")
        note = self._load_note(note_id)
        if note.status in (CreditNoteStatus.CANCELLED.value, CreditNoteStatus.FULLY_USED.value):
            raise InvalidTransitionError("credit_note", note.status, "extend")
        today = self.clock.today()
        previous_until = note.valid_until
        note.valid_until = max(previous_until or today, today) + timedelta(days=days)
        previous = note.status
        if note.status == CreditNoteStatus.EXPIRED.value:
            satisfied = frozenset({UNUSED.name}) if Decimal(note.amount_used) == ZERO else frozenset()
            note.status = CREDIT_NOTE_WORKFLOW.next_state(note.status, "extend", satisfied)
        note.updated_by_id = principal.actor_id
        self.session.flush()
        self._history(
            note, CreditNoteAction.EXTENDED, principal,
            previous=previous,
            description=f"Validity extended by {days} days",
            metadata={
                "previous_valid_until": previous_until.isoformat() if previous_until else None,
                "valid_until": note.valid_until.isoformat(),
            },
        )
        logger.info(
            "credit_note_extended",
            extra={"credit_note_id": str(note.id), "valid_until": note.valid_until.isoformat()},
        )
        return note.to_dto()

    def expire_due(self, principal: Principal, as_of: date | None = None) -> list[CreditNoteInfo]:
        """Expire every note whose ``valid_until`` is before ``as_of``."""
        self._access.ensure_admin(principal, "credit_note:expire")
        as_of = as_of or self.clock.today()
        notes = self.session.execute(
            select(CreditNoteModel)
            .where(
                CreditNoteModel.status.in_(EXPIRABLE_STATUSES),
                CreditNoteModel.valid_until.is_not(None),
                CreditNoteModel.valid_until < as_of,
            )
            .order_by(CreditNoteModel.valid_until, CreditNoteModel.note_number)
            .with_for_update()
        ).scalars().all()
        expired = [
            self._move(note, "expire", CreditNoteAction.EXPIRED, principal, f"Validity ended {note.valid_until}")
            for note in notes
        ]
        if expired:
            logger.info(
                "credit_notes_expired",
                extra={"count": len(expired), "as_of": as_of.isoformat()},
            )
        return expired

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, note_id: UUID, principal: Principal) -> CreditNoteInfo:
        note = self._load_note(note_id, lock=False)
        self._access.ensure_credit_note_access(principal, note)
        return note.to_dto()

    def get_by_number(self, note_number: str, principal: Principal) -> CreditNoteInfo:
        note = self.session.execute(
            select(CreditNoteModel).where(CreditNoteModel.note_number == note_number)
        ).scalar_one_or_none()
        if note is None:
            raise CreditNoteNotFoundError(note_number)
        self._access.ensure_credit_note_access(principal, note)
        return note.to_dto()

    def available_for_customer(
        self,
        customer_id: UUID,
        principal: Principal,
        min_amount: Decimal | None = None,
    ) -> list[CreditNoteInfo]:
        """Usable notes for a customer, soonest-expiring first."""
        if not principal.is_admin and principal.actor_id != customer_id:
            raise AccessDeniedError(principal.actor_id, f"customer:{customer_id}", "not the customer")
        today = self.clock.today()
        notes = self.session.execute(
            select(CreditNoteModel)
            .where(
                CreditNoteModel.customer_id == customer_id,
                CreditNoteModel.status.in_(USABLE_STATUSES),
                (CreditNoteModel.valid_until.is_(None)) | (CreditNoteModel.valid_until >= today),
            )
            .order_by(
                CreditNoteModel.valid_until.is_(None),
                CreditNoteModel.valid_until,
                CreditNoteModel.created_at,
            )
        ).scalars()
        result = []
        for note in notes:
            available = note.amount_available
            if available <= ZERO:
                continue
            if min_amount is not None and available < to_money(min_amount):
                continue
            result.append(note.to_dto())
        return result

    def applications(self, note_id: UUID, principal: Principal) -> list[CreditNoteApplicationInfo]:
        note = self._load_note(note_id, lock=False)
        self._access.ensure_credit_note_access(principal, note)
        return [a.to_dto() for a in note.applications]

    def history(self, note_id: UUID, principal: Principal) -> list[CreditNoteHistoryInfo]:
        note = self._load_note(note_id, lock=False)
        self._access.ensure_credit_note_access(principal, note)
        rows = self.session.execute(
            select(CreditNoteHistoryModel)
            .where(CreditNoteHistoryModel.credit_note_id == note_id)
            .order_by(CreditNoteHistoryModel.performed_at)
        ).scalars()
        return [r.to_dto() for r in rows]

    # =========================================================================
    # Internals
    # =========================================================================

    def _activate(self, note: CreditNoteModel, principal: Principal) -> None:
        transition = CREDIT_NOTE_WORKFLOW.transition_for(note.status, "approve")
        now = self.clock.now()
        if transition.posts_entry:
            txn = self._ledger.journal.record_for_rule(
                "credit_note_issue",
                gateway=None,
                amount=Decimal(note.amount),
                currency=note.currency,
                reference_type=ReferenceType.CREDIT_NOTE,
                reference_id=note.id,
                actor_id=principal.actor_id,
                order_id=note.order_id,
                description=f"Credit Note: {note.note_number} - {note.reason}",
            )
            note.issuance_transaction_id = txn.id
        previous = note.status
        note.status = transition.to_state
        note.approved_by_id = principal.actor_id
        note.approved_at = now
        note.updated_by_id = principal.actor_id
        self.session.flush()
        self._history(note, CreditNoteAction.APPROVED, principal, previous=previous)

    def _move(
        self,
        note: CreditNoteModel,
        action: str,
        history_action: CreditNoteAction,
        principal: Principal,
        description: str | None,
    ) -> CreditNoteInfo:
        satisfied = frozenset({UNUSED.name}) if Decimal(note.amount_used) == ZERO else frozenset()
        previous = note.status
        note.status = CREDIT_NOTE_WORKFLOW.next_state(note.status, action, satisfied)
        note.updated_by_id = principal.actor_id
        self.session.flush()
        self._history(note, history_action, principal, previous=previous, description=description)
        logger.info(
            "credit_note_status_changed",
            extra={
                "credit_note_id": str(note.id),
                "action": action,
                "from_status": previous,
                "to_status": note.status,
            },
        )
        return note.to_dto()

    def _history(
        self,
        note: CreditNoteModel,
        action: CreditNoteAction,
        principal: Principal,
        *,
        previous: str | None,
        amount_change: Decimal | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            CreditNoteHistoryModel(
                credit_note_id=note.id,
                action=action.value,
                previous_status=enum_value(previous) if previous is not None else None,
                new_status=enum_value(note.status),
                amount_change=amount_change,
                description=description,
                performed_by_id=principal.actor_id,
                performed_at=self.clock.now(),
                history_metadata=metadata,
            )
        )
        self.session.flush()

    def _load_note(self, note_id: UUID, lock: bool = True) -> CreditNoteModel:
        query = select(CreditNoteModel).where(CreditNoteModel.id == note_id)
        if lock:
            query = query.with_for_update()
        note = self.session.execute(query).scalar_one_or_none()
        if note is None:
            raise CreditNoteNotFoundError(note_id)
        return note
