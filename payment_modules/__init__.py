"""
Payment Modules.

Workflow layers over the Payment Kernel.  Each module contains:
- Domain models (frozen DTOs and enums)
- ORM persistence
- Workflows (declarative state machines)
- A service orchestrating kernel writes

Modules:
- Refunds: request -> approval -> LIFO allocation -> per-item execution
- Credit notes: store credit issuance, application, reversal, expiry
- Reconciliation: ledger vs statement matching sessions
- Webhooks: idempotent, all-or-nothing gateway event intake

``payment_modules.engine.PaymentEngine`` composes the services and owns the
transaction boundary for external callers.
"""
