"""
Credit Note ORM Models (``payment_modules.credit_notes.orm``).

Responsibility
--------------
SQLAlchemy persistence for credit notes, their applications to orders and
their audit history.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``payment_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``payment_kernel``.

Invariants enforced
-------------------
* ``amount_used <= amount`` (CHECK) and ``applied_amount > 0`` (CHECK).
* ``credit_note_history`` is append-only (``db/immutability.py``).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_kernel.db.base import Base, TrackedBase
from payment_modules.credit_notes.models import (
    ApplicationStatus,
    CreditNoteAction,
    CreditNoteApplicationInfo,
    CreditNoteHistoryInfo,
    CreditNoteInfo,
    CreditNoteStatus,
    CreditNoteType,
)


# ---------------------------------------------------------------------------
# CreditNoteModel
# ---------------------------------------------------------------------------

class CreditNoteModel(TrackedBase):
    """
    ORM model for ``CreditNoteInfo``.

    Table: ``credit_notes``
    """

    __tablename__ = "credit_notes"

    note_number: Mapped[str] = mapped_column(String(30))
    note_type: Mapped[str] = mapped_column(String(10), default=CreditNoteType.CREDIT.value)
    customer_id: Mapped[UUID]
    order_id: Mapped[UUID | None] = mapped_column(ForeignKey("orders.id"))
    refund_request_id: Mapped[UUID | None] = mapped_column(ForeignKey("refund_requests.id"))
    amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3))
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=Decimal("1"))
    base_amount: Mapped[Decimal]
    amount_used: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    reason: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(String(1000))
    valid_from: Mapped[date]
    valid_until: Mapped[date | None]
    minimum_order_value: Mapped[Decimal | None]
    allowed_categories: Mapped[list[str] | None] = mapped_column(JSON)
    allowed_countries: Mapped[list[str] | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default=CreditNoteStatus.DRAFT.value)
    issued_by_id: Mapped[UUID]
    issued_at: Mapped[datetime]
    approved_by_id: Mapped[UUID | None]
    approved_at: Mapped[datetime | None]
    cancelled_by_id: Mapped[UUID | None]
    cancelled_at: Mapped[datetime | None]
    cancellation_reason: Mapped[str | None] = mapped_column(String(1000))
    issuance_transaction_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("financial_transactions.id"),
    )
    note_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)

    applications: Mapped[list["CreditNoteApplicationModel"]] = relationship(
        back_populates="credit_note",
        order_by="CreditNoteApplicationModel.applied_at",
    )

    __table_args__ = (
        UniqueConstraint("note_number", name="uq_credit_notes_number"),
        CheckConstraint("amount > 0", name="ck_credit_notes_amount_positive"),
        CheckConstraint(
            "amount_used >= 0 AND amount_used <= amount",
            name="ck_credit_notes_amount_used_range",
        ),
        Index("idx_credit_notes_customer_status", "customer_id", "status"),
        Index("idx_credit_notes_valid_until", "valid_until"),
    )

    @property
    def amount_available(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.amount_used)

    def to_dto(self) -> CreditNoteInfo:
        return CreditNoteInfo(
            id=self.id,
            note_number=self.note_number,
            note_type=CreditNoteType(self.note_type),
            customer_id=self.customer_id,
            amount=self.amount,
            currency=self.currency,
            amount_used=self.amount_used,
            status=CreditNoteStatus(self.status),
            reason=self.reason,
            valid_from=self.valid_from,
            valid_until=self.valid_until,
            minimum_order_value=self.minimum_order_value,
            order_id=self.order_id,
            refund_request_id=self.refund_request_id,
            issuance_transaction_id=self.issuance_transaction_id,
        )

    def __repr__(self) -> str:
        return (
            f"<CreditNoteModel({self.note_number!r}, {self.amount_used}/{self.amount} "
            f"{self.currency}, status={self.status!r})>"
        )


# ---------------------------------------------------------------------------
# CreditNoteApplicationModel
# ---------------------------------------------------------------------------

class CreditNoteApplicationModel(TrackedBase):
    """
    ORM model for ``CreditNoteApplicationInfo``.

    Table: ``credit_note_applications``
    """

    __tablename__ = "credit_note_applications"

    credit_note_id: Mapped[UUID] = mapped_column(ForeignKey("credit_notes.id"))
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"))
    applied_amount: Mapped[Decimal]
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default=ApplicationStatus.APPLIED.value)
    ledger_entry_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_ledger.id"))
    financial_transaction_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("financial_transactions.id"),
    )
    applied_by_id: Mapped[UUID]
    applied_at: Mapped[datetime]
    reversal_entry_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_ledger.id"))
    reversed_by_id: Mapped[UUID | None]
    reversed_at: Mapped[datetime | None]
    reversal_reason: Mapped[str | None] = mapped_column(String(1000))
    notes: Mapped[str | None] = mapped_column(String(1000))

    credit_note: Mapped["CreditNoteModel"] = relationship(back_populates="applications")

    __table_args__ = (
        CheckConstraint("applied_amount > 0", name="ck_credit_note_applications_amount_positive"),
        Index("idx_credit_note_applications_note", "credit_note_id"),
        Index("idx_credit_note_applications_order", "order_id"),
    )

    def to_dto(self) -> CreditNoteApplicationInfo:
        return CreditNoteApplicationInfo(
            id=self.id,
            credit_note_id=self.credit_note_id,
            order_id=self.order_id,
            applied_amount=self.applied_amount,
            currency=self.currency,
            status=ApplicationStatus(self.status),
            ledger_entry_id=self.ledger_entry_id,
            applied_by_id=self.applied_by_id,
            applied_at=self.applied_at,
            reversal_entry_id=self.reversal_entry_id,
            reversal_reason=self.reversal_reason,
            reversed_at=self.reversed_at,
        )


# ---------------------------------------------------------------------------
# CreditNoteHistoryModel
# ---------------------------------------------------------------------------

class CreditNoteHistoryModel(Base):
    """
    Append-only audit trail for credit note actions.

    Table: ``credit_note_history``
    """

    __tablename__ = "credit_note_history"

    credit_note_id: Mapped[UUID] = mapped_column(ForeignKey("credit_notes.id"))
    action: Mapped[str] = mapped_column(String(30))
    previous_status: Mapped[str | None] = mapped_column(String(20))
    new_status: Mapped[str | None] = mapped_column(String(20))
    amount_change: Mapped[Decimal | None]
    description: Mapped[str | None] = mapped_column(String(1000))
    performed_by_id: Mapped[UUID]
    performed_at: Mapped[datetime]
    history_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)

    __table_args__ = (
        Index("idx_credit_note_history_note", "credit_note_id", "performed_at"),
    )

    def to_dto(self) -> CreditNoteHistoryInfo:
        return CreditNoteHistoryInfo(
            credit_note_id=self.credit_note_id,
            action=CreditNoteAction(self.action),
            previous_status=CreditNoteStatus(self.previous_status) if self.previous_status else None,
            new_status=CreditNoteStatus(self.new_status) if self.new_status else None,
            amount_change=self.amount_change,
            description=self.description,
            performed_by_id=self.performed_by_id,
            performed_at=self.performed_at,
            metadata=dict(self.history_metadata or {}),
        )
