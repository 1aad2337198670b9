"""
Account Lock Coordination Module

Transfers serialize on per-account locks keyed by a 64-bit hash of the
normalized address. Both keys of a transfer are always taken in ascending
order, so two transfers over the same pair of accounts can never wait on
each other in a cycle. Hash collisions only cause extra serialization.
"""

import threading
from typing import Dict, List, Optional, Tuple

from .errors import TransferCancelledError


FNV64_OFFSET_BASIS = 0xCBF29CE484222325
FNV64_PRIME = 0x100000001B3
_UINT64_MASK = (1 << 64) - 1


def lock_key(address: str) -> int:
    """
    Map a normalized address to a signed 64-bit lock key

    Uses 64-bit FNV-1 over the UTF-8 bytes of the address, reinterpreted as a
    signed integer so the key is also a valid PostgreSQL advisory-lock key.
    """
    value = FNV64_OFFSET_BASIS
    for byte in address.encode("utf-8"):
        value = (value * FNV64_PRIME) & _UINT64_MASK
        value ^= byte
    if value >= 1 << 63:
        value -= 1 << 64
    return value


def lock_order(first: str, second: str) -> List[Tuple[int, str]]:
    """Return (key, address) pairs in acquisition order: by key, then by address"""
    return sorted([(lock_key(first), first), (lock_key(second), second)])


class _KeyedLock:
    """A lock plus the number of threads holding or waiting for it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLockManager:
    """
    In-process named mutexes keyed by integers

    Used by stores without a native advisory lock. Entries are created on
    first use and dropped once nobody holds or waits for them.
    """

    def __init__(self, poll_interval: float = 0.05):
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: Dict[int, _KeyedLock] = {}

    def acquire(self, key: int, cancel_event: Optional[threading.Event] = None) -> None:
        """
        Block until the lock for key is held by the caller

        Args:
            key: Lock key
            cancel_event: When set while waiting, give up the wait

        Raises:
            TransferCancelledError: If cancel_event was set before the lock was granted
        """
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.users += 1

        acquired = False
        try:
            if cancel_event is None:
                acquired = entry.lock.acquire()
            else:
                while not acquired:
                    if cancel_event.is_set():
                        raise TransferCancelledError()
                    acquired = entry.lock.acquire(timeout=self.poll_interval)
        finally:
            if not acquired:
                self._forget(key, entry)

    def release(self, key: int) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.lock.release()
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _forget(self, key: int, entry: _KeyedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def is_locked(self, key: int) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LockCoordinator:
    """Acquires the account locks of a transfer inside its unit of work"""

    def lock_accounts(self, unit_of_work, first: str, second: str) -> List[int]:
        """
        Lock both accounts in deterministic order

        Locks belong to the unit of work and are released when it commits or
        rolls back.

        Args:
            unit_of_work: Open UnitOfWork from the ledger store
            first: Normalized address of one participant
            second: Normalized address of the other participant

        Returns:
            Lock keys in the order they were acquired
        """
        keys = []
        for key, _address in lock_order(first, second):
            unit_of_work.acquire_lock(key)
            keys.append(key)
        return keys
