"""
Module: payment_kernel.models.journal
Responsibility: ORM persistence for the Double-Entry Journal -- one row per
    debit/credit posting derived from a ledger event.
Architecture position: Kernel > Models.

Invariants enforced:
    - debit_account != credit_account and amount > 0 (CHECK constraints and
      JournalService validation).
    - A reversed transaction has exactly one reversal: reversal_of_id is
      unique, so at most one row can point back at any original.
    - Posted rows only ever change status to reversed (db/immutability.py).

Audit relevance:
    reference_type / reference_id tie every posting to the ledger entry,
    credit note or refund that caused it; approved_by_id and posted_at
    record who released it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payment_kernel.db.base import TrackedBase, UUIDString


class TransactionStatus(str, Enum):
    """pending -> posted -> reversed, or pending -> void."""

    PENDING = "pending"
    POSTED = "posted"
    VOID = "void"
    REVERSED = "reversed"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"
    CHARGEBACK = "chargeback"
    FEE = "fee"
    DISCOUNT = "discount"
    WRITE_OFF = "write_off"
    EXCHANGE_ADJUSTMENT = "exchange_adjustment"


class ReferenceType(str, Enum):
    LEDGER_ENTRY = "ledger_entry"
    CREDIT_NOTE = "credit_note"
    REFUND_REQUEST = "refund_request"
    REVERSAL = "reversal"


class FinancialTransaction(TrackedBase):
    """A single double-entry posting."""

    __tablename__ = "financial_transactions"

    __table_args__ = (
        UniqueConstraint("sequence", name="uq_financial_transactions_sequence"),
        UniqueConstraint("reversal_of_id", name="uq_financial_transactions_reversal_of"),
        CheckConstraint("amount > 0", name="ck_financial_transactions_amount_positive"),
        CheckConstraint(
            "debit_account <> credit_account",
            name="ck_financial_transactions_distinct_accounts",
        ),
        Index("idx_financial_transactions_reference", "reference_type", "reference_id"),
        Index("idx_financial_transactions_order", "order_id"),
        Index("idx_financial_transactions_status", "status"),
    )

    sequence: Mapped[int] = mapped_column(nullable=False)

    transaction_type: Mapped[TransactionType] = mapped_column(String(30), nullable=False)

    reference_type: Mapped[ReferenceType] = mapped_column(String(30), nullable=False)

    reference_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=True,
    )

    debit_account: Mapped[str] = mapped_column(
        String(20), ForeignKey("chart_of_accounts.code"), nullable=False,
    )

    credit_account: Mapped[str] = mapped_column(
        String(20), ForeignKey("chart_of_accounts.code"), nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        String(10), default=TransactionStatus.PENDING, nullable=False,
    )

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Set on the reversal row, pointing at the original
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("financial_transactions.id"), nullable=True,
    )

    # Set on the original once reversed
    reversed_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("financial_transactions.id"), nullable=True,
    )

    reversal_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    transaction_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<FinancialTransaction #{self.sequence} Dr {self.debit_account} "
            f"Cr {self.credit_account} {self.amount} {self.currency} {self.status}>"
        )
