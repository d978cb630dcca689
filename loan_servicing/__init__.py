"""
Loan Servicing Engine

Amortization, payment waterfall allocation, overdue detection, payment
reclassification and ledger reconciliation for a microloan book. All
financial math uses Decimal and every mutation is double-entry and audited.
"""

__version__ = "1.0.0"
