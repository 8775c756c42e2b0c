"""
Access -- explicit authorization interface for payment operations.

Responsibility:
    Decide whether an acting principal may touch an order, a credit note or
    an administrative surface (refund approval, credit-note issuance,
    reconciliation).  The identity layer authenticates; this module only
    receives the resulting ``Principal``.

Architecture position:
    Kernel > Domain.  Pure: policies inspect plain attributes of the objects
    they are given and never query storage.

Failure modes:
    - AccessDeniedError when a check fails.  Callers must run the check
      before returning or mutating data.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from payment_kernel.exceptions import AccessDeniedError


@dataclass(frozen=True)
class Principal:
    """The acting identity supplied by the caller for every mutating call."""

    actor_id: UUID
    is_admin: bool = False

    @classmethod
    def system(cls, actor_id: UUID) -> "Principal":
        """Principal for gateway callbacks and scheduled jobs."""
        return cls(actor_id=actor_id, is_admin=True)


class AccessPolicy(ABC):
    """
    Authorization interface the engine calls before returning or mutating data.

    Contract:
        Each ``ensure_*`` method returns None on success and raises
        ``AccessDeniedError`` otherwise.
    """

    @abstractmethod
    def ensure_order_access(self, principal: Principal, order) -> None:
        ...

    @abstractmethod
    def ensure_credit_note_access(self, principal: Principal, note) -> None:
        ...

    @abstractmethod
    def ensure_admin(self, principal: Principal, resource: str) -> None:
        ...


class OwnershipAccessPolicy(AccessPolicy):
    """Customers reach their own orders and credit notes; administrators reach everything."""

    def ensure_order_access(self, principal: Principal, order) -> None:
        if principal.is_admin:
            return
        if order.customer_id is None or order.customer_id != principal.actor_id:
            raise AccessDeniedError(principal.actor_id, f"order:{order.id}", "not the order owner")

    def ensure_credit_note_access(self, principal: Principal, note) -> None:
        if principal.is_admin:
            return
        if note.customer_id != principal.actor_id:
            raise AccessDeniedError(
                principal.actor_id, f"credit_note:{note.note_number}", "not the credit note owner",
            )

    def ensure_admin(self, principal: Principal, resource: str) -> None:
        if not principal.is_admin:
            raise AccessDeniedError(principal.actor_id, resource, "administrator required")
