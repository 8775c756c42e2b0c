"""
Base service class for kernel and module services.

Responsibility:
    Common constructor contract: a caller-owned ``Session``, an injected
    ``Clock`` and the active ``PaymentConfig``.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Services flush; they never commit or roll back.  The caller
      (``session_scope()`` or ``PaymentEngine``) owns the boundary, so a
      ledger write, its journal posting and the projection recomputation
      land together or not at all.
"""

from abc import ABC

from sqlalchemy.orm import Session

from payment_config import PaymentConfig, get_active_config
from payment_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all payment services.

    Contract:
        Accepts a ``Session`` and uses ``session.flush()`` to persist changes
        within the active transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Read-only queries belong in ``payment_kernel/selectors/``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PaymentConfig | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.config = config or get_active_config()
