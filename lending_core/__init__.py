"""
Lending Core

Credit lifecycle engine for a line-of-credit back office: amortization
schedules, loan application approval and payment posting against a
double-entry ledger, with all financial math in Decimal.
"""

__version__ = "1.0.0"
