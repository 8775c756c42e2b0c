"""
Payment Kernel

The ledger core of the payment subsystem:
- Append-only Ledger Store of money movements per order
- Double-entry journal postings, reversible exactly once
- Order payment projection recomputed inside every ledger write
- Injectable clock, sequence and authorization seams
- Multi-currency amounts kept in their original currency
"""

__version__ = "0.1.0"
