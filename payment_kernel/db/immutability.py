"""
ORM-level immutability enforcement for the payment ledger.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below inspect attribute history and raise
``ImmutabilityViolationError`` when a protected row would change:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | When immutable                 | What may still change
------------------------|--------------------------------|---------------------------
LedgerEntry             | once status = completed        | updated_at / updated_by_id
LedgerEntry             | delete: always                 | -
FinancialTransaction    | once status = posted           | status -> reversed, reversed_by_id,
                        |                                | reversal_reason, updated_*
FinancialTransaction    | once void / reversed; delete   | updated_at / updated_by_id
Append-only module rows | always (e.g. credit note       | nothing
                        | history)                       |

The check is on the status the row had BEFORE this flush, so the workflow
transition itself (pending -> completed, pending -> posted) passes.

===============================================================================
USAGE
===============================================================================

    from payment_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

``unregister_immutability_listeners()`` exists for tests that need to
seed a state the rules forbid.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from payment_kernel.db.types import enum_value
from payment_kernel.exceptions import ImmutabilityViolationError
from payment_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

_REVERSAL_FIELDS = frozenset({"status", "reversed_by_id", "reversal_reason"})


def _status_before_flush(target) -> str | None:
    history = get_history(target, "status")
    if history.deleted:
        return enum_value(history.deleted[0])
    if history.unchanged:
        return enum_value(history.unchanged[0])
    if not history.added:
        return enum_value(target.status)
    return None


def _changed_fields(target) -> list[str]:
    return [attr.key for attr in inspect(target).attrs if attr.history.has_changes()]


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# -----------------------------------------------------------------------------
# Ledger entries
# -----------------------------------------------------------------------------


def _check_ledger_entry_immutability(mapper, connection, target):
    """A completed ledger entry is final; corrections are new entries."""
    if _status_before_flush(target) != "completed":
        return
    for field in _changed_fields(target):
        if field in _AUDIT_FIELDS:
            continue
        _block("LedgerEntry", target, "UPDATE", f"Cannot modify field '{field}' on completed ledger entry")


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "DELETE", "Ledger entries are never deleted; write a compensating entry")


# -----------------------------------------------------------------------------
# Financial transactions
# -----------------------------------------------------------------------------


def _check_financial_transaction_immutability(mapper, connection, target):
    """
    Posted transactions change only by being reversed; void and reversed
    transactions are final.
    """
    previous = _status_before_flush(target)
    if previous not in ("posted", "void", "reversed"):
        return

    allowed = set(_AUDIT_FIELDS)
    if previous == "posted" and enum_value(target.status) == "reversed":
        allowed |= _REVERSAL_FIELDS

    for field in _changed_fields(target):
        if field in allowed:
            continue
        _block(
            "FinancialTransaction",
            target,
            "UPDATE",
            f"Cannot modify field '{field}' on {previous} financial transaction",
        )


def _check_financial_transaction_delete(mapper, connection, target):
    _block("FinancialTransaction", target, "DELETE", "Financial transactions cannot be deleted")


# -----------------------------------------------------------------------------
# Append-only rows
# -----------------------------------------------------------------------------


def _check_append_only_update(mapper, connection, target):
    _block(type(target).__name__, target, "UPDATE", "Append-only records cannot be modified")


def _check_append_only_delete(mapper, connection, target):
    _block(type(target).__name__, target, "DELETE", "Append-only records cannot be deleted")


def _listeners():
    from payment_kernel.models.journal import FinancialTransaction
    from payment_kernel.models.ledger import LedgerEntry
    from payment_modules._orm_registry import append_only_models

    pairs = [
        (LedgerEntry, "before_update", _check_ledger_entry_immutability),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (FinancialTransaction, "before_update", _check_financial_transaction_immutability),
        (FinancialTransaction, "before_delete", _check_financial_transaction_delete),
    ]
    for model in append_only_models():
        pairs.append((model, "before_update", _check_append_only_update))
        pairs.append((model, "before_delete", _check_append_only_delete))
    return pairs


def register_immutability_listeners():
    """Register every immutability listener.  Safe to call more than once."""
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def unregister_immutability_listeners():
    """
    Remove the listeners.

    WARNING: tests only.
    """
    for target, event_name, fn in _listeners():
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
