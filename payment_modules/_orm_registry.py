"""
Module ORM Registry (``payment_modules._orm_registry``).

Responsibility
--------------
Import every ORM model so ``Base.metadata`` knows all tables before
``create_tables()`` runs, and name the append-only tables the immutability
listeners protect.

Architecture position
---------------------
**Modules layer** -- utility.  Imported lazily by
``payment_kernel.db.engine.create_tables`` and
``payment_kernel.db.immutability``.
"""


def import_all_orm_models() -> None:
    """Import kernel models and every ``payment_modules.*.orm`` module.  Idempotent."""
    # Kernel tables first; module tables reference orders and payment_ledger.
    import payment_kernel.models  # noqa: F401
    # fmt: off
    import payment_modules.credit_notes.orm  # noqa: F401
    import payment_modules.reconciliation.orm  # noqa: F401
    import payment_modules.refunds.orm  # noqa: F401
    import payment_modules.webhooks.orm  # noqa: F401
    # fmt: on


def append_only_models() -> tuple[type, ...]:
    """ORM classes whose rows may never be updated or deleted."""
    from payment_modules.credit_notes.orm import CreditNoteHistoryModel

    return (CreditNoteHistoryModel,)
