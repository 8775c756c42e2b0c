"""
payment_modules.reconciliation
==============================

Responsibility:
    Statement reconciliation: compare ledger entries for a payment scope
    and date range with imported bank/gateway statement lines, pair them
    exactly, fuzzily or by hand, and record discrepancies.

Architecture:
    Module layer.  Reads the Ledger Store through
    ``payment_kernel.selectors``; writes only its own session and item
    tables.

Invariants enforced:
    - Each item is matched to at most one item on the other side.
    - A completed session has no unmatched items and a closing difference
      inside the reconciliation tolerance.
"""

from payment_modules.reconciliation.helpers import parse_csv, parse_mt940, parse_statement
from payment_modules.reconciliation.matching import MatchTolerance
from payment_modules.reconciliation.models import (
    ItemSide,
    ItemStatus,
    MatchPairInfo,
    MatchRunResult,
    MatchType,
    ReconciliationItemInfo,
    ReconciliationSessionInfo,
    ReconciliationStatus,
    ResolutionAction,
    StatementLine,
)
from payment_modules.reconciliation.service import ReconciliationService
from payment_modules.reconciliation.workflows import RECONCILIATION_WORKFLOW

__all__ = [
    "ItemSide",
    "ItemStatus",
    "MatchPairInfo",
    "MatchRunResult",
    "MatchTolerance",
    "MatchType",
    "RECONCILIATION_WORKFLOW",
    "ReconciliationItemInfo",
    "ReconciliationService",
    "ReconciliationSessionInfo",
    "ReconciliationStatus",
    "ResolutionAction",
    "StatementLine",
    "parse_csv",
    "parse_mt940",
    "parse_statement",
]
