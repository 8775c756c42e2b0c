"""
Pure domain layer.

Objects here have no dependency on the ORM, the database or I/O: the clock
abstraction, the authorization interface, declarative workflows and the
projection classification rules.
"""

from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from payment_kernel.domain.projection import PaymentClassification, PaymentStatus, classify
from payment_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "AccessPolicy",
    "Clock",
    "DeterministicClock",
    "Guard",
    "OwnershipAccessPolicy",
    "PaymentClassification",
    "PaymentStatus",
    "Principal",
    "SystemClock",
    "Transition",
    "Workflow",
    "classify",
]
