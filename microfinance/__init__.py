"""
Microfinance Back-Office

Loan lifecycle, fee and schedule computation, collection and distribution
ledgers, and an append-only metrics event store for a microfinance
institution. All monetary values use Decimal.
"""

__version__ = "1.0.0"
