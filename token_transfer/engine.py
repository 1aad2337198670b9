"""
Transfer Engine Module

Moves tokens between two wallets as one atomic unit of work:
validate, lock both accounts in a fixed order, read and check the sender,
create the recipient on first use, apply the delta and commit. Any failure
after the unit of work opens rolls back every write.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional
import threading

from .addresses import normalize_pair
from .amounts import LEDGER_CONTEXT, format_balance, parse_amount
from .errors import (
    AccountNotFoundError, InsufficientBalanceError, LedgerError, TransferCancelledError
)
from .locks import LockCoordinator
from .logging_config import get_logger, log_action
from .storage import UnitOfWork, WalletStore


class TransferState(Enum):
    """Stages of a transfer"""
    VALIDATING = "validating"
    LOCKING = "locking"
    READING = "reading"
    CREATING_RECIPIENT = "creating_recipient"
    UPDATING = "updating"
    COMMITTED = "committed"
    FAILED = "failed"


class TransferEngine:
    """
    Executes token transfers against a wallet store

    The engine keeps no state between calls; concurrent transfers coordinate
    only through the store and its account locks.
    """

    def __init__(self, store: WalletStore, lock_coordinator: Optional[LockCoordinator] = None):
        self.store = store
        self.lock_coordinator = lock_coordinator or LockCoordinator()
        self.logger = get_logger("token_transfer.engine")

    def transfer(
        self,
        from_address: str,
        to_address: str,
        amount: str,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None
    ) -> str:
        """
        Transfer tokens from one wallet to another

        Args:
            from_address: Sender address, must already hold a wallet
            to_address: Recipient address, created with zero balance if new
            amount: Decimal string, positive, at most 18 fractional digits
            cancel_event: Set by the caller to abort the transfer
            correlation_id: Request identifier carried into the logs

        Returns:
            Sender's new balance with 18 fractional digits

        Raises:
            MalformedRequestError: Bad address or amount, raised before any I/O
            AccountNotFoundError: Sender has no wallet
            InsufficientBalanceError: Sender balance is below the amount
            StoreError: Storage failed; nothing was written
            TransferCancelledError: cancel_event was set before commit
        """
        state = TransferState.VALIDATING
        try:
            sender, recipient = normalize_pair(from_address, to_address)
            value = parse_amount(amount)

            with self.store.unit_of_work(cancel_event) as uow:
                state = self._advance(state, TransferState.LOCKING, cancel_event)
                self.lock_coordinator.lock_accounts(uow, sender, recipient)

                state = self._advance(state, TransferState.READING, cancel_event)
                prior_balance = uow.read_balance(sender)
                if prior_balance < value:
                    raise InsufficientBalanceError()

                if not self._wallet_exists(uow, recipient):
                    state = self._advance(state, TransferState.CREATING_RECIPIENT, cancel_event)
                    uow.create_account(recipient)

                state = self._advance(state, TransferState.UPDATING, cancel_event)
                uow.apply_delta(sender, recipient, value)
                self._check_cancelled(cancel_event)

            state = self._advance(state, TransferState.COMMITTED)

        except LedgerError as e:
            self._log_failure(state, from_address, to_address, amount, e, correlation_id)
            raise
        except Exception:
            self.logger.exception(f"Transfer failed unexpectedly in state {state.value}")
            raise

        new_balance = LEDGER_CONTEXT.subtract(prior_balance, value)
        log_action(
            self.logger, "info", "Transfer committed",
            action="transfer", resource=sender, correlation_id=correlation_id,
            extra={"to": recipient, "amount": str(value), "sender_balance": format_balance(new_balance)}
        )
        return format_balance(new_balance)

    def _wallet_exists(self, uow: UnitOfWork, address: str) -> bool:
        try:
            uow.read_balance(address)
        except AccountNotFoundError:
            return False
        return True

    def _advance(self, current: TransferState, target: TransferState,
                 cancel_event: Optional[threading.Event] = None) -> TransferState:
        self._check_cancelled(cancel_event)
        self.logger.debug(f"Transfer state {current.value} -> {target.value}")
        return target

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TransferCancelledError()

    def _log_failure(self, state: TransferState, from_address, to_address, amount,
                     error: LedgerError, correlation_id: Optional[str]) -> None:
        self.logger.debug(f"Transfer state {state.value} -> {TransferState.FAILED.value}")
        log_action(
            self.logger, "warning", f"Transfer rejected: {error}",
            action="transfer", resource=str(from_address), correlation_id=correlation_id,
            extra={
                "to": str(to_address),
                "amount": str(amount),
                "error": type(error).__name__,
                "category": error.category.value,
                "state": state.value,
            }
        )
