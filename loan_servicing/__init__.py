"""
Loan Servicing Core

Amortization schedules, payment allocation, derived loan tracking with
replay-based recalculation, risk classification, and concurrency-safe
business identifier issuance. All financial math uses Decimal.
"""

__version__ = "1.0.0"
