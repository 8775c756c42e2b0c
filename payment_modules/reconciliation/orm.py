"""
Reconciliation ORM Models (``payment_modules.reconciliation.orm``).

Responsibility
--------------
SQLAlchemy persistence for reconciliation sessions and their items.  The
engine reads the Ledger Store and writes only these tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``payment_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``payment_kernel``.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_kernel.db.base import TrackedBase
from payment_modules.reconciliation.models import (
    ItemSide,
    ItemStatus,
    MatchType,
    ReconciliationItemInfo,
    ReconciliationSessionInfo,
    ReconciliationStatus,
    ResolutionAction,
)


# ---------------------------------------------------------------------------
# ReconciliationSessionModel
# ---------------------------------------------------------------------------

class ReconciliationSessionModel(TrackedBase):
    """
    ORM model for ``ReconciliationSessionInfo``.

    Table: ``reconciliation_sessions``
    """

    __tablename__ = "reconciliation_sessions"

    payment_method: Mapped[str] = mapped_column(String(50))
    gateway_code: Mapped[str | None] = mapped_column(String(50))
    statement_date: Mapped[date]
    statement_start_date: Mapped[date]
    statement_end_date: Mapped[date]
    status: Mapped[str] = mapped_column(String(20), default=ReconciliationStatus.IN_PROGRESS.value)
    opening_balance: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    statement_closing_balance: Mapped[Decimal | None]
    system_total_credits: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    system_total_debits: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    system_closing_balance: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    statement_total_credits: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    statement_total_debits: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    closing_difference: Mapped[Decimal | None]
    total_items: Mapped[int] = mapped_column(default=0)
    matched_count: Mapped[int] = mapped_column(default=0)
    unmatched_system_count: Mapped[int] = mapped_column(default=0)
    unmatched_statement_count: Mapped[int] = mapped_column(default=0)
    total_matched_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    reconciled_by_id: Mapped[UUID]
    started_at: Mapped[datetime]
    completed_at: Mapped[datetime | None]
    notes: Mapped[str | None] = mapped_column(String(4000))

    items: Mapped[list["ReconciliationItemModel"]] = relationship(
        back_populates="session",
        order_by="ReconciliationItemModel.position",
    )

    __table_args__ = (
        Index("idx_reconciliation_sessions_scope", "payment_method", "gateway_code", "statement_date"),
        Index("idx_reconciliation_sessions_status", "status"),
    )

    def to_dto(self) -> ReconciliationSessionInfo:
        return ReconciliationSessionInfo(
            id=self.id,
            payment_method=self.payment_method,
            gateway_code=self.gateway_code,
            statement_date=self.statement_date,
            statement_start_date=self.statement_start_date,
            statement_end_date=self.statement_end_date,
            status=ReconciliationStatus(self.status),
            opening_balance=self.opening_balance,
            statement_closing_balance=self.statement_closing_balance,
            system_total_credits=self.system_total_credits,
            system_total_debits=self.system_total_debits,
            system_closing_balance=self.system_closing_balance,
            statement_total_credits=self.statement_total_credits,
            statement_total_debits=self.statement_total_debits,
            closing_difference=self.closing_difference,
            total_items=self.total_items,
            matched_count=self.matched_count,
            unmatched_system_count=self.unmatched_system_count,
            unmatched_statement_count=self.unmatched_statement_count,
            total_matched_amount=self.total_matched_amount,
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return (
            f"<ReconciliationSessionModel({self.payment_method!r}, {self.statement_date}, "
            f"status={self.status!r}, matched={self.matched_count}/{self.total_items})>"
        )


# ---------------------------------------------------------------------------
# ReconciliationItemModel
# ---------------------------------------------------------------------------

class ReconciliationItemModel(TrackedBase):
    """
    ORM model for ``ReconciliationItemInfo`` -- either a system-side ledger
    entry (``ledger_entry_id`` set) or an imported statement line.

    Table: ``reconciliation_items``
    """

    __tablename__ = "reconciliation_items"

    session_id: Mapped[UUID] = mapped_column(ForeignKey("reconciliation_sessions.id"))
    side: Mapped[str] = mapped_column(String(10))
    position: Mapped[int]
    ledger_entry_id: Mapped[UUID | None] = mapped_column(ForeignKey("payment_ledger.id"))
    item_date: Mapped[date]
    amount: Mapped[Decimal]
    reference: Mapped[str | None] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(String(1000))
    transaction_type: Mapped[str | None] = mapped_column(String(30))
    matched: Mapped[bool] = mapped_column(Boolean, default=False)
    match_type: Mapped[str] = mapped_column(String(20), default=MatchType.UNMATCHED.value)
    match_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    matched_with_id: Mapped[UUID | None] = mapped_column(ForeignKey("reconciliation_items.id"))
    matched_at: Mapped[datetime | None]
    matched_by_id: Mapped[UUID | None]
    status: Mapped[str] = mapped_column(String(20), default=ItemStatus.PENDING.value)
    discrepancy_reason: Mapped[str | None] = mapped_column(String(1000))
    resolution_action: Mapped[str | None] = mapped_column(String(30))

    session: Mapped["ReconciliationSessionModel"] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_reconciliation_items_position"),
        UniqueConstraint("session_id", "ledger_entry_id", name="uq_reconciliation_items_ledger_entry"),
        Index("idx_reconciliation_items_session_matched", "session_id", "matched"),
    )

    def to_dto(self) -> ReconciliationItemInfo:
        return ReconciliationItemInfo(
            id=self.id,
            session_id=self.session_id,
            side=ItemSide(self.side),
            position=self.position,
            ledger_entry_id=self.ledger_entry_id,
            item_date=self.item_date,
            amount=self.amount,
            reference=self.reference,
            description=self.description,
            matched=self.matched,
            match_type=MatchType(self.match_type),
            match_confidence=self.match_confidence,
            matched_with_id=self.matched_with_id,
            status=ItemStatus(self.status),
            discrepancy_reason=self.discrepancy_reason,
            resolution_action=ResolutionAction(self.resolution_action) if self.resolution_action else None,
        )
