"""
Token Transfer Ledger

Wallet balances keyed by hex address with atomic, deadlock-free transfers.
All token math uses exact Decimal arithmetic.
"""

__version__ = "1.0.0"
