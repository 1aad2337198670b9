"""
Address Normalization Module

Wallet addresses are "0x" followed by 40 hex digits. Letter case in the hex
part carries no meaning here, so every address is lowered once at the edge
and the canonical form is used for comparisons, lock keys and storage keys.
"""

import re
from typing import Tuple

from .errors import InvalidAddressFormatError, SameAddressError


ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")


def normalize_address(address: str) -> str:
    """
    Validate an address and return its canonical form

    Args:
        address: Raw address as supplied by the caller

    Returns:
        "0x" followed by the 40 hex digits in lower case

    Raises:
        InvalidAddressFormatError: If the address does not match 0x + 40 hex digits
    """
    if not isinstance(address, str) or not ADDRESS_PATTERN.fullmatch(address):
        raise InvalidAddressFormatError()
    return "0x" + address[2:].lower()


def normalize_pair(from_address: str, to_address: str) -> Tuple[str, str]:
    """Normalize sender and recipient, rejecting a transfer to oneself"""
    sender = normalize_address(from_address)
    recipient = normalize_address(to_address)
    if sender == recipient:
        raise SameAddressError()
    return sender, recipient
