"""
Balance Reader Module

Point lookups for the query path. Reads take no account locks, so a balance
may change right after it is returned.
"""

from .addresses import normalize_address
from .errors import AccountNotFoundError
from .storage import Wallet, WalletStore


class BalanceReader:
    """Read-only access to wallet balances"""

    def __init__(self, store: WalletStore):
        self.store = store

    def wallet(self, address: str) -> Wallet:
        """
        Look up a wallet by address

        Raises:
            InvalidAddressFormatError: If the address is malformed
            AccountNotFoundError: If no wallet exists for the address
        """
        normalized = normalize_address(address)
        wallet = self.store.get_wallet(normalized)
        if wallet is None:
            raise AccountNotFoundError(normalized)
        return wallet

    def balance(self, address: str) -> str:
        """Balance rendered with 18 fractional digits"""
        return self.wallet(address).to_dict()["balance"]
