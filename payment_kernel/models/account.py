"""
Module: payment_kernel.models.account
Responsibility: ORM persistence for the Chart of Accounts -- the debit and
    credit targets of every financial transaction.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Account codes are unique; financial transactions reference them by code.
    - Only active accounts may be posted to (checked by ChartOfAccountsService).

Audit relevance:
    Changing an account's type after postings exist would change the meaning
    of historical journal rows; the seed is additive and never rewrites type.
"""

from enum import Enum

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payment_kernel.db.base import TrackedBase


class AccountType(str, Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class ChartAccount(TrackedBase):
    """
    A ledger account in the chart of accounts.

    Contract:
        ``code`` is the stable business key (e.g. "1112" Stripe clearing).
        ``parent_code`` builds the reporting hierarchy and is informational.
    """

    __tablename__ = "chart_of_accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_chart_of_accounts_code"),
        Index("idx_chart_of_accounts_type", "account_type"),
    )

    code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    account_type: Mapped[AccountType] = mapped_column(String(20), nullable=False)

    parent_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<ChartAccount {self.code} {self.name}>"
