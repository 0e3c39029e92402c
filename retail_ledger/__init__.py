"""
Retail Ledger

Account balances and the transactions that move money between them, with
Decimal financial math, per-account locking and analytics derived from an
append-only transaction log.
"""

__version__ = "1.0.0"
