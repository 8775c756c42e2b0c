"""
Services for the payment kernel (write side).

Import services from their modules (``payment_kernel.services.ledger_service``
and so on).  This package stays import-free because ``payment_kernel.models``
registers ``SequenceCounter`` through ``services.sequence_service``.
"""
