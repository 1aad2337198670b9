"""
Error Taxonomy Module

Every failure the ledger can report is a LedgerError subclass tagged with a
category, so callers can tell a malformed request from a rejected operation
from a storage failure without parsing messages.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Broad classes of ledger failures"""
    MALFORMED = "malformed"    # Request can never succeed as written
    REJECTED = "rejected"      # Refused because of current ledger state
    STORAGE = "storage"        # Persistence failed, caller may retry
    CANCELLED = "cancelled"    # Caller aborted the operation


class LedgerError(Exception):
    """Base class for all ledger errors"""
    category = ErrorCategory.STORAGE
    default_message = "ledger error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class MalformedRequestError(LedgerError, ValueError):
    """Request failed validation before touching the ledger"""
    category = ErrorCategory.MALFORMED
    default_message = "malformed request"


class InvalidAddressFormatError(MalformedRequestError):
    default_message = "invalid Ethereum address format"


class SameAddressError(MalformedRequestError):
    default_message = "sender and recipient addresses must be different"


class InvalidAmountFormatError(MalformedRequestError):
    default_message = "invalid decimal amount"


class NonPositiveAmountError(MalformedRequestError):
    default_message = "amount must be greater than zero"


class TooManyDecimalPlacesError(MalformedRequestError):
    default_message = "too many decimal places: max 18 allowed"


class TooManyDigitsError(MalformedRequestError):
    default_message = "too many digits: max precision is 28"


class LedgerRejectedError(LedgerError):
    """Ledger state does not allow the operation"""
    category = ErrorCategory.REJECTED
    default_message = "operation rejected"


class AccountNotFoundError(LedgerRejectedError):
    default_message = "wallet not found"

    def __init__(self, address: Optional[str] = None, message: Optional[str] = None):
        self.address = address
        if message is None and address:
            message = f"{self.default_message}: {address}"
        super().__init__(message)


class InsufficientBalanceError(LedgerRejectedError):
    default_message = "insufficient balance"


class StoreError(LedgerError):
    """Underlying persistence failure"""
    category = ErrorCategory.STORAGE
    default_message = "storage failure"


class TransferCancelledError(LedgerError):
    """Transfer aborted by the caller before it committed"""
    category = ErrorCategory.CANCELLED
    default_message = "transfer cancelled"
