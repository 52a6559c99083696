"""
Loan Engine

Loan amortization and payment application: fixed repayment schedules,
payment matching, principal prepayment with re-amortization and loan
lifecycle management, using Decimal money throughout and a hash-chained
audit trail.
"""

__version__ = "1.0.0"
