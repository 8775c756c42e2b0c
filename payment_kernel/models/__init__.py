"""Kernel ORM models.  Importing this package registers every kernel table."""

from payment_kernel.models.account import AccountType, ChartAccount
from payment_kernel.models.journal import (
    FinancialTransaction,
    ReferenceType,
    TransactionStatus,
    TransactionType,
)
from payment_kernel.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from payment_kernel.models.order import Order
from payment_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "AccountType",
    "ChartAccount",
    "FinancialTransaction",
    "LedgerEntry",
    "LedgerEntryStatus",
    "LedgerEntryType",
    "Order",
    "ReferenceType",
    "SequenceCounter",
    "TransactionStatus",
    "TransactionType",
]
