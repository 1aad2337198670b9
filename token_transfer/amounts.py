"""
Token Amount Module

Parses and bounds-checks transfer amounts and renders balances. Token
balances are stored as NUMERIC(28,18), so amounts are exact Decimals with at
most 18 fractional digits and 28 digits overall. NEVER uses float.
"""

from decimal import Context, Decimal, Inexact, InvalidOperation, Overflow, ROUND_HALF_EVEN
import re

from .errors import (
    InvalidAmountFormatError, NonPositiveAmountError,
    TooManyDecimalPlacesError, TooManyDigitsError
)


MAX_SCALE = 18       # Fractional digits kept by the balance column
MAX_PRECISION = 28   # Total digits kept by the balance column

# Smallest representable unit, 10^-18
TOKEN_QUANTUM = Decimal(1).scaleb(-MAX_SCALE)

# Largest balance the column can hold: 10 integer digits, 18 fractional
MAX_BALANCE = Decimal(10) ** (MAX_PRECISION - MAX_SCALE) - TOKEN_QUANTUM

# Wide enough for any sum or difference of two column values. Inexact is
# trapped so a computation that would have to round raises instead.
LEDGER_CONTEXT = Context(
    prec=64,
    rounding=ROUND_HALF_EVEN,
    traps=[InvalidOperation, Inexact, Overflow]
)

# ASCII digits only; Decimal() would also accept other Unicode digits
AMOUNT_PATTERN = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def parse_amount(amount: str) -> Decimal:
    """
    Parse and validate a transfer amount

    Args:
        amount: Decimal string such as "100", "0.000000000000000001" or "1.5e3"

    Returns:
        The amount as an exact Decimal

    Raises:
        InvalidAmountFormatError: If the string is not a decimal number
        NonPositiveAmountError: If the amount is zero or negative
        TooManyDecimalPlacesError: If it has more than 18 fractional digits
        TooManyDigitsError: If it has more than 28 digits in total
    """
    if not isinstance(amount, str) or not AMOUNT_PATTERN.fullmatch(amount):
        raise InvalidAmountFormatError()

    value = Decimal(amount)

    if value <= 0:
        raise NonPositiveAmountError()

    _, digits, exponent = value.as_tuple()

    if exponent < -MAX_SCALE:
        raise TooManyDecimalPlacesError()

    # Digits as written, plus the zeros a positive exponent stands for
    if len(digits) + max(exponent, 0) > MAX_PRECISION:
        raise TooManyDigitsError()

    return value


def parse_balance(value) -> Decimal:
    """Convert a stored balance (Decimal or decimal string) to Decimal"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_balance(value: Decimal) -> str:
    """Render a balance with the full 18-digit scale, e.g. '900.000000000000000000'"""
    return format(value.quantize(TOKEN_QUANTUM, context=LEDGER_CONTEXT), "f")


def fits_balance_column(value: Decimal) -> bool:
    """Check that a balance satisfies the NUMERIC(28,18) CHECK(>= 0) column"""
    return Decimal(0) <= value <= MAX_BALANCE and value.as_tuple().exponent >= -MAX_SCALE
