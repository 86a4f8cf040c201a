"""
Loan Engine

Amortization schedules, late-fee accrual, payment allocation and
reversible reconciliation for fixed-term and indefinite loans.
All financial math uses Decimal.
"""

__version__ = "1.0.0"
