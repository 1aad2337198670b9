"""
Wallet Storage Backend Module

Provides the abstract wallet store and its unit of work, with implementations
for in-memory (testing), SQLite (single host persistence) and PostgreSQL
(production). Balances are exact Decimals and never pass through float.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union
import re
import sqlite3
import threading
import time

from .amounts import LEDGER_CONTEXT, fits_balance_column, format_balance, parse_balance
from .errors import AccountNotFoundError, StoreError, TransferCancelledError
from .locks import KeyedLockManager
from .logging_config import get_logger


TABLE_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


def validate_table_name(table: str) -> str:
    """Table names are interpolated into SQL, so only plain identifiers are allowed"""
    if not isinstance(table, str) or not TABLE_NAME_PATTERN.fullmatch(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


@dataclass(frozen=True)
class Wallet:
    """An account: canonical address and its token balance"""
    address: str
    balance: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {"address": self.address, "balance": format_balance(self.balance)}


class UnitOfWork(ABC):
    """
    One atomic group of reads and writes against the wallet table

    Account locks taken through acquire_lock belong to the unit of work and
    are released by close(), after commit or rollback.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event
        self._held_keys: List[int] = []
        self._finished = False

    @property
    def held_keys(self) -> List[int]:
        return list(self._held_keys)

    def acquire_lock(self, key: int) -> None:
        """Take the account lock for key, blocking until it is granted"""
        if key in self._held_keys:
            return
        self._acquire_lock(key)
        self._held_keys.append(key)

    @abstractmethod
    def _acquire_lock(self, key: int) -> None:
        pass

    @abstractmethod
    def _release_locks(self) -> None:
        pass

    @abstractmethod
    def read_balance(self, address: str) -> Decimal:
        """Read a balance, raising AccountNotFoundError if the row is missing"""
        pass

    @abstractmethod
    def create_account(self, address: str) -> None:
        """Insert a zero-balance row, raising StoreError if it already exists"""
        pass

    @abstractmethod
    def apply_delta(self, from_address: str, to_address: str, amount: Decimal) -> None:
        """Debit the sender and credit the recipient by the same amount"""
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass

    def commit(self) -> None:
        if not self._finished:
            self._commit()
            self._finished = True

    def rollback(self) -> None:
        if not self._finished:
            self._finished = True
            self._rollback()

    def close(self) -> None:
        """Roll back anything uncommitted and release held locks"""
        try:
            self.rollback()
        finally:
            self._release_locks()
            self._held_keys = []


class WalletStore(ABC):
    """Abstract interface for wallet storage backends"""

    def __init__(self, table: str = "wallets"):
        self.table = validate_table_name(table)
        self.logger = get_logger("token_transfer.storage")

    @abstractmethod
    def begin(self, cancel_event: Optional[threading.Event] = None) -> UnitOfWork:
        """Open a unit of work"""
        pass

    @abstractmethod
    def get_wallet(self, address: str) -> Optional[Wallet]:
        """Unlocked single-row read"""
        pass

    @abstractmethod
    def create_table(self) -> None:
        """Create the wallet table if it does not exist"""
        pass

    @abstractmethod
    def seed_wallet(self, address: str, balance: Union[str, Decimal]) -> None:
        """Insert a wallet with the given balance"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Delete every wallet in the table"""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @contextmanager
    def unit_of_work(self, cancel_event: Optional[threading.Event] = None) -> Iterator[UnitOfWork]:
        """Context manager for atomic operations"""
        uow = self.begin(cancel_event)
        try:
            yield uow
            uow.commit()
        except Exception:
            uow.rollback()
            raise
        finally:
            uow.close()

    def _checked_balance(self, balance: Union[str, Decimal]) -> Decimal:
        value = parse_balance(balance)
        if not fits_balance_column(value):
            raise StoreError(f"balance {balance} does not fit NUMERIC(28,18) >= 0")
        return value


def _debit_credit(sender: Decimal, recipient: Decimal, amount: Decimal):
    """New (sender, recipient) balances, checked against the balance column"""
    new_sender = LEDGER_CONTEXT.subtract(sender, amount)
    new_recipient = LEDGER_CONTEXT.add(recipient, amount)
    if not fits_balance_column(new_sender):
        raise StoreError("balance check constraint violated")
    if not fits_balance_column(new_recipient):
        raise StoreError("numeric field overflow")
    return new_sender, new_recipient


class _InMemoryUnitOfWork(UnitOfWork):
    """Buffers writes and applies them to the store in one step on commit"""

    def __init__(self, store: 'InMemoryWalletStore', cancel_event=None):
        super().__init__(cancel_event)
        self._store = store
        self._pending: Dict[str, Decimal] = {}

    def _acquire_lock(self, key: int) -> None:
        self._store.lock_manager.acquire(key, self.cancel_event)

    def _release_locks(self) -> None:
        for key in reversed(self._held_keys):
            self._store.lock_manager.release(key)

    def _lookup(self, address: str) -> Optional[Decimal]:
        if address in self._pending:
            return self._pending[address]
        with self._store._lock:
            return self._store._balances.get(address)

    def read_balance(self, address: str) -> Decimal:
        balance = self._lookup(address)
        if balance is None:
            raise AccountNotFoundError(address)
        return balance

    def create_account(self, address: str) -> None:
        if self._lookup(address) is not None:
            raise StoreError(f"duplicate key value violates unique constraint: {address}")
        self._pending[address] = Decimal(0)

    def apply_delta(self, from_address: str, to_address: str, amount: Decimal) -> None:
        new_sender, new_recipient = _debit_credit(
            self.read_balance(from_address), self.read_balance(to_address), amount
        )
        self._pending[from_address] = new_sender
        self._pending[to_address] = new_recipient

    def _commit(self) -> None:
        with self._store._lock:
            self._store._balances.update(self._pending)
        self._pending = {}

    def _rollback(self) -> None:
        self._pending = {}


class InMemoryWalletStore(WalletStore):
    """In-memory wallet store for testing"""

    def __init__(self, table: str = "wallets", lock_manager: Optional[KeyedLockManager] = None):
        super().__init__(table)
        self._balances: Dict[str, Decimal] = {}
        self._lock = threading.RLock()
        self.lock_manager = lock_manager or KeyedLockManager()

    def begin(self, cancel_event=None) -> UnitOfWork:
        return _InMemoryUnitOfWork(self, cancel_event)

    def get_wallet(self, address: str) -> Optional[Wallet]:
        with self._lock:
            balance = self._balances.get(address)
        if balance is None:
            return None
        return Wallet(address, balance)

    def create_table(self) -> None:
        """Nothing to create for in-memory storage"""
        pass

    def seed_wallet(self, address: str, balance: Union[str, Decimal]) -> None:
        value = self._checked_balance(balance)
        with self._lock:
            if address in self._balances:
                raise StoreError(f"duplicate key value violates unique constraint: {address}")
            self._balances[address] = value

    def clear(self) -> None:
        with self._lock:
            self._balances = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def total_supply(self) -> Decimal:
        """Sum of every balance, for conservation checks"""
        total = Decimal(0)
        with self._lock:
            for balance in self._balances.values():
                total = LEDGER_CONTEXT.add(total, balance)
        return total


@contextmanager
def _sqlite_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StoreError(f"{operation} failed: {e}") from e


class _SQLiteUnitOfWork(UnitOfWork):
    """
    One connection and one BEGIN IMMEDIATE transaction

    IMMEDIATE takes the database write lock up front, so a unit of work that
    holds account locks always holds the write lock as well. SQLite has a
    single writer: transfers on this backend run one at a time even over
    disjoint accounts, and the account locks are then never contended.
    """

    def __init__(self, store: 'SQLiteWalletStore', cancel_event=None):
        super().__init__(cancel_event)
        self._store = store
        self._connection = store._connect()
        try:
            self._begin()
        except Exception:
            self._connection.close()
            raise

    def _begin(self) -> None:
        """Open the write transaction, waiting at most the store timeout"""
        if self.cancel_event is None:
            with _sqlite_errors("begin"):
                self._connection.execute("BEGIN IMMEDIATE")
            return

        # Wait in short busy slices so a cancelled transfer stops waiting
        poll_ms = max(1, int(self._store.lock_manager.poll_interval * 1000))
        deadline = time.monotonic() + self._store.timeout
        with _sqlite_errors("begin"):
            self._connection.execute(f"PRAGMA busy_timeout = {poll_ms}")
            while True:
                if self.cancel_event.is_set():
                    raise TransferCancelledError()
                try:
                    self._connection.execute("BEGIN IMMEDIATE")
                    break
                except sqlite3.OperationalError as e:
                    if "locked" not in str(e) or time.monotonic() >= deadline:
                        raise
            self._connection.execute(f"PRAGMA busy_timeout = {int(self._store.timeout * 1000)}")

    def _acquire_lock(self, key: int) -> None:
        self._store.lock_manager.acquire(key, self.cancel_event)

    def _release_locks(self) -> None:
        for key in reversed(self._held_keys):
            self._store.lock_manager.release(key)

    def read_balance(self, address: str) -> Decimal:
        with _sqlite_errors("read balance"):
            row = self._connection.execute(
                f"SELECT token_balance FROM {self._store.table} WHERE address = ?",
                (address,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(address)
        return Decimal(row["token_balance"])

    def create_account(self, address: str) -> None:
        with _sqlite_errors("create account"):
            self._connection.execute(
                f"INSERT INTO {self._store.table} (address, token_balance) VALUES (?, ?)",
                (address, format_balance(Decimal(0)))
            )

    def apply_delta(self, from_address: str, to_address: str, amount: Decimal) -> None:
        new_sender, new_recipient = _debit_credit(
            self.read_balance(from_address), self.read_balance(to_address), amount
        )
        with _sqlite_errors("update balances"):
            for address, balance in ((from_address, new_sender), (to_address, new_recipient)):
                self._connection.execute(
                    f"UPDATE {self._store.table} SET token_balance = ? WHERE address = ?",
                    (format_balance(balance), address)
                )

    def _commit(self) -> None:
        with _sqlite_errors("commit"):
            self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        with _sqlite_errors("rollback"):
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")

    def close(self) -> None:
        try:
            super().close()
        finally:
            self._connection.close()


class SQLiteWalletStore(WalletStore):
    """SQLite wallet store; balances are kept as 18-digit decimal text"""

    def __init__(self, db_path: Union[str, Path] = "token_transfer.db", table: str = "wallets",
                 timeout: float = 30.0, lock_manager: Optional[KeyedLockManager] = None):
        super().__init__(table)
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError("SQLiteWalletStore needs a database file; use InMemoryWalletStore instead")
        self.timeout = timeout
        self.lock_manager = lock_manager or KeyedLockManager()

        # Enable WAL mode so unlocked reads do not wait for writers
        connection = self._connect()
        try:
            with _sqlite_errors("configure"):
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
        finally:
            connection.close()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened and closed explicitly
        with _sqlite_errors("connect"):
            connection = sqlite3.connect(
                self.db_path, timeout=self.timeout,
                isolation_level=None, check_same_thread=False
            )
        connection.row_factory = sqlite3.Row
        return connection

    def begin(self, cancel_event=None) -> UnitOfWork:
        return _SQLiteUnitOfWork(self, cancel_event)

    def get_wallet(self, address: str) -> Optional[Wallet]:
        connection = self._connect()
        try:
            with _sqlite_errors("get wallet"):
                row = connection.execute(
                    f"SELECT address, token_balance FROM {self.table} WHERE address = ?",
                    (address,)
                ).fetchone()
        finally:
            connection.close()
        if row is None:
            return None
        return Wallet(row["address"], Decimal(row["token_balance"]))

    def create_table(self) -> None:
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                address TEXT PRIMARY KEY,
                token_balance TEXT NOT NULL CHECK (token_balance NOT LIKE '-%')
            )
        """)

    def seed_wallet(self, address: str, balance: Union[str, Decimal]) -> None:
        value = self._checked_balance(balance)
        self._execute(
            f"INSERT INTO {self.table} (address, token_balance) VALUES (?, ?)",
            (address, format_balance(value))
        )

    def clear(self) -> None:
        self._execute(f"DELETE FROM {self.table}")

    def close(self) -> None:
        """Connections are per unit of work; nothing stays open"""
        pass

    def _execute(self, sql: str, params: tuple = ()) -> None:
        connection = self._connect()
        try:
            with _sqlite_errors("execute"):
                connection.execute(sql, params)
        finally:
            connection.close()


class _PostgreSQLUnitOfWork(UnitOfWork):
    """One connection and transaction; account locks are transaction advisory locks"""

    def __init__(self, store: 'PostgreSQLWalletStore', cancel_event=None):
        super().__init__(cancel_event)
        self._store = store
        self._connection = store._connect()

    @contextmanager
    def _cursor(self, operation: str):
        cursor = self._connection.cursor()
        try:
            yield cursor
        except self._store.psycopg2.Error as e:
            raise StoreError(f"{operation} failed: {e}") from e
        finally:
            cursor.close()

    def _acquire_lock(self, key: int) -> None:
        # Released by PostgreSQL itself at commit or rollback
        with self._cursor("lock account") as cursor:
            cursor.execute("SELECT pg_advisory_xact_lock(%s)", (key,))

    def _release_locks(self) -> None:
        pass

    def read_balance(self, address: str) -> Decimal:
        with self._cursor("read balance") as cursor:
            cursor.execute(
                f"SELECT token_balance FROM {self._store.table} WHERE address = %s",
                (address,)
            )
            row = cursor.fetchone()
        if row is None:
            raise AccountNotFoundError(address)
        return parse_balance(row[0])

    def create_account(self, address: str) -> None:
        with self._cursor("create account") as cursor:
            cursor.execute(
                f"INSERT INTO {self._store.table} (address, token_balance) VALUES (%s, 0)",
                (address,)
            )

    def apply_delta(self, from_address: str, to_address: str, amount: Decimal) -> None:
        # The CHECK (token_balance >= 0) constraint backs up the engine's balance check
        with self._cursor("update balances") as cursor:
            cursor.execute(
                f"UPDATE {self._store.table} SET token_balance = token_balance - %s::numeric "
                f"WHERE address = %s",
                (str(amount), from_address)
            )
            if cursor.rowcount != 1:
                raise AccountNotFoundError(from_address)
            cursor.execute(
                f"UPDATE {self._store.table} SET token_balance = token_balance + %s::numeric "
                f"WHERE address = %s",
                (str(amount), to_address)
            )
            if cursor.rowcount != 1:
                raise AccountNotFoundError(to_address)

    def _commit(self) -> None:
        try:
            self._connection.commit()
        except self._store.psycopg2.Error as e:
            raise StoreError(f"commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
        except self._store.psycopg2.Error as e:
            raise StoreError(f"rollback failed: {e}") from e

    def close(self) -> None:
        try:
            super().close()
        finally:
            self._connection.close()


class PostgreSQLWalletStore(WalletStore):
    """PostgreSQL wallet store with NUMERIC(28,18) balances and advisory locks"""

    def __init__(self, connection_string: str, table: str = "wallets"):
        super().__init__(table)
        try:
            import psycopg2
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string

    def _connect(self):
        try:
            connection = self.psycopg2.connect(self.connection_string)
        except self.psycopg2.Error as e:
            raise StoreError(f"connect failed: {e}") from e
        connection.autocommit = False  # We handle transactions manually
        return connection

    def begin(self, cancel_event=None) -> UnitOfWork:
        return _PostgreSQLUnitOfWork(self, cancel_event)

    def get_wallet(self, address: str) -> Optional[Wallet]:
        rows = self._execute(
            f"SELECT address, token_balance FROM {self.table} WHERE address = %s",
            (address,), fetch=True
        )
        if not rows:
            return None
        return Wallet(rows[0][0], parse_balance(rows[0][1]))

    def create_table(self) -> None:
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                address TEXT PRIMARY KEY,
                token_balance NUMERIC(28,18) NOT NULL CHECK (token_balance >= 0)
            )
        """)

    def seed_wallet(self, address: str, balance: Union[str, Decimal]) -> None:
        value = self._checked_balance(balance)
        self._execute(
            f"INSERT INTO {self.table} (address, token_balance) VALUES (%s, %s::numeric)",
            (address, str(value))
        )

    def clear(self) -> None:
        self._execute(f"DELETE FROM {self.table}")

    def close(self) -> None:
        """Connections are per unit of work; nothing stays open"""
        pass

    def _execute(self, sql: str, params: tuple = (), fetch: bool = False):
        connection = self._connect()
        try:
            with connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, params)
                    if fetch:
                        return cursor.fetchall()
            return None
        except self.psycopg2.Error as e:
            raise StoreError(f"execute failed: {e}") from e
        finally:
            connection.close()


def create_store(database_url: str, table: str = "wallets") -> WalletStore:
    """
    Build a wallet store from a database URL

    Args:
        database_url: memory://, sqlite:///path/to/file.db or postgresql://...
        table: Wallet table name

    Returns:
        WalletStore for the URL's backend
    """
    logger = get_logger("token_transfer.storage")

    if database_url.startswith("memory://"):
        store = InMemoryWalletStore(table)
    elif database_url.startswith("sqlite:///"):
        store = SQLiteWalletStore(database_url[len("sqlite:///"):], table)
    elif database_url.startswith(("postgresql://", "postgres://")):
        store = PostgreSQLWalletStore(database_url, table)
    else:
        raise ValueError(f"Unsupported database URL: {database_url}")

    logger.info(f"Using {type(store).__name__} for table {table}")
    return store
