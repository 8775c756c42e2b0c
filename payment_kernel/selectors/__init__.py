"""Selectors for the payment kernel (read side)."""

from payment_kernel.selectors.journal_selector import (
    AccountBalance,
    FinancialTransactionDTO,
    JournalSelector,
)
from payment_kernel.selectors.ledger_selector import (
    LedgerEntryDTO,
    LedgerSelector,
    LedgerTotals,
)

__all__ = [
    "AccountBalance",
    "FinancialTransactionDTO",
    "JournalSelector",
    "LedgerEntryDTO",
    "LedgerSelector",
    "LedgerTotals",
]
