"""Implements the ciphertext store: account key -> at-rest ciphertext blob."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Tuple

import os
import sqlite3
from threading import Lock

from confidential_ledger_backend.common.errors import NotFoundError, StoreError

ACCOUNT_KEY_SIZE = 32


def validate_account_key(key: bytes) -> bytes:
    """Checks that the key is a 32 byte opaque identifier and returns it unchanged.

    Raises:
        ValueError: If the key is not bytes or not exactly 32 bytes long.
    """
    if not isinstance(key, (bytes, bytearray)):
        raise ValueError(f"Account key must be bytes, got {type(key).__name__}")
    if len(key) != ACCOUNT_KEY_SIZE:
        raise ValueError(
            f"Account key must be {ACCOUNT_KEY_SIZE} bytes, got {len(key)} bytes"
        )
    return bytes(key)


class CiphertextStorage(ABC):
    """The storage interface every ciphertext store must implement.

    The interface defines the following methods:
    - get -> returns the at-rest ciphertext stored for the key.
    - upsert -> inserts the record or replaces the existing one unconditionally.
    - update_existing -> replaces the record only if it already exists. A missing
    record is not an error, the call simply affects no rows.
    - update_existing_many -> several update_existing writes applied as one unit,
    either all of them land or none do.
    - contains -> checks whether a record exists.

    Each call is an independent unit of work. No ordering or transaction spans
    two calls.
    """

    __slots__ = ()

    def initialize(self) -> None:
        """Prepares the underlying persistence engine. Idempotent."""

    def get(self, key: bytes) -> bytes:
        """Returns the at-rest ciphertext stored for the key.

        Raises:
            ValueError: If the key is not a valid account key.
            NotFoundError: If no record exists for the key.
            StoreError: If the persistence engine fails.
        """
        return self._get(validate_account_key(key))

    def contains(self, key: bytes) -> bool:
        """Returns True if a record exists for the key."""
        try:
            self.get(key)
            return True
        except NotFoundError:
            return False

    def upsert(self, key: bytes, value: bytes) -> None:
        """Inserts a new record or replaces the existing one.

        Raises:
            ValueError: If the key is not a valid account key or the value is not bytes.
            StoreError: If the persistence engine fails.
        """
        self._upsert(validate_account_key(key), _validate_value(value))

    def update_existing(self, key: bytes, value: bytes) -> int:
        """Replaces the record for the key if one exists.

        Returns:
            The number of records affected, 0 when the key has no record.

        Raises:
            ValueError: If the key is not a valid account key or the value is not bytes.
            StoreError: If the persistence engine fails.
        """
        return self._update_existing(validate_account_key(key), _validate_value(value))

    def update_existing_many(self, items: Iterable[Tuple[bytes, bytes]]) -> int:
        """Applies update_existing for every (key, value) pair in a single transaction.

        Returns:
            The total number of records affected.

        Raises:
            ValueError: If any key or value is invalid. Nothing is written in that case.
            StoreError: If the persistence engine fails. Nothing is written in that case.
        """
        validated = [
            (validate_account_key(key), _validate_value(value)) for key, value in items
        ]
        return self._update_existing_many(validated)

    @abstractmethod
    def _get(self, key: bytes) -> bytes:
        """Implements get. Must raise NotFoundError if the key has no record."""
        pass

    @abstractmethod
    def _upsert(self, key: bytes, value: bytes) -> None:
        pass

    @abstractmethod
    def _update_existing(self, key: bytes, value: bytes) -> int:
        pass

    @abstractmethod
    def _update_existing_many(self, items: List[Tuple[bytes, bytes]]) -> int:
        pass


def _validate_value(value: bytes) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"Ciphertext must be bytes, got {type(value).__name__}")
    return bytes(value)


class SQLiteCiphertextStorage(CiphertextStorage):
    """Ciphertext store backed by a SQLite database file.

    Every call opens its own connection and commits before returning, so a
    store call never observes an uncommitted write of another call. The table
    holds one row per account:

        computations(key BLOB PRIMARY KEY, ciphertext BLOB NOT NULL)
    """

    __slots__ = ("_db_path", "_timeout")

    _db_path: str
    _timeout: float

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        """
        Args:
            db_path: Path to the SQLite database file. Created on initialize.
            timeout: Seconds a connection waits for a competing writer's lock.
        """
        self._db_path = db_path
        self._timeout = timeout

    @property
    def db_path(self) -> str:
        return self._db_path

    def initialize(self) -> None:
        parent = os.path.dirname(self._db_path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            with self._connection() as conn:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS computations ("
                    "key BLOB NOT NULL PRIMARY KEY, "
                    "ciphertext BLOB NOT NULL)"
                )
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Unable to initialize storage at {self._db_path}") from e

    def _connection(self) -> _ConnectionContext:
        return _ConnectionContext(self._db_path, self._timeout)

    def _get(self, key: bytes) -> bytes:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT ciphertext FROM computations WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Unable to read key {key.hex()}") from e
        if row is None:
            raise NotFoundError(f"Key {key.hex()} not found")
        return bytes(row[0])

    def _upsert(self, key: bytes, value: bytes) -> None:
        try:
            with self._connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO computations (key, ciphertext) VALUES (?, ?)",
                    (key, value),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Unable to upsert key {key.hex()}") from e

    def _update_existing(self, key: bytes, value: bytes) -> int:
        try:
            with self._connection() as conn:
                cursor = conn.execute(
                    "UPDATE computations SET ciphertext = ? WHERE key = ?",
                    (value, key),
                )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise StoreError(f"Unable to update key {key.hex()}") from e

    def _update_existing_many(self, items: List[Tuple[bytes, bytes]]) -> int:
        try:
            with self._connection() as conn:
                affected = 0
                for key, value in items:
                    cursor = conn.execute(
                        "UPDATE computations SET ciphertext = ? WHERE key = ?",
                        (value, key),
                    )
                    affected += cursor.rowcount
                return affected
        except sqlite3.Error as e:
            raise StoreError(
                f"Unable to update keys {[key.hex() for key, _ in items]}"
            ) from e


class _ConnectionContext:
    """Opens a connection, commits on success, rolls back on error and always closes.

    sqlite3.Connection used as a context manager only manages the transaction,
    it does not close the connection.
    """

    __slots__ = ("_db_path", "_timeout", "_conn")

    def __init__(self, db_path: str, timeout: float) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None

    def __enter__(self) -> sqlite3.Connection:
        self._conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> None:
        assert self._conn is not None
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


class MemoryCiphertextStorage(CiphertextStorage):
    """Non-durable ciphertext store keeping every record in a dict.

    Has the same semantics as SQLiteCiphertextStorage. Records are lost when the
    process exits.
    """

    __slots__ = ("_records", "_lock")

    _records: Dict[bytes, bytes]
    _lock: Lock

    def __init__(self) -> None:
        self._records = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _get(self, key: bytes) -> bytes:
        with self._lock:
            if key not in self._records:
                raise NotFoundError(f"Key {key.hex()} not found")
            return self._records[key]

    def _upsert(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._records[key] = value

    def _update_existing(self, key: bytes, value: bytes) -> int:
        with self._lock:
            if key not in self._records:
                return 0
            self._records[key] = value
            return 1

    def _update_existing_many(self, items: List[Tuple[bytes, bytes]]) -> int:
        with self._lock:
            affected = 0
            for key, value in items:
                if key in self._records:
                    self._records[key] = value
                    affected += 1
            return affected
