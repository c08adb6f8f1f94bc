"""The balance ledger service.

Each operation is a short protocol over the ciphertext store and the
homomorphic engine: fetch at-rest blobs, prepare them to live ciphertexts,
compute under encryption, serialize and store. Debits are clamped with an
encrypted comparison and an encrypted select, so the service never learns
whether an account could cover an amount.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Literal, Tuple, TypeVar

import os

from typing_extensions import override

from confidential_ledger_backend.common.errors import (
    LedgerError,
    OperationError,
    StoreError,
)
from confidential_ledger_backend.common.logger import LogMessage, Logger
from confidential_ledger_backend.common.storage import (
    ACCOUNT_KEY_SIZE,
    CiphertextStorage,
    MemoryCiphertextStorage,
    SQLiteCiphertextStorage,
    validate_account_key,
)
from confidential_ledger_backend.core.engine_interface import (
    U64_MAX,
    EncryptedUInt64,
    IHomomorphicEngine,
    KeySet,
)
from confidential_ledger_backend.core.ledger_service_interface import (
    Amount,
    ILedgerService,
    StoredAmount,
    TransferWriteMode,
)

# holds an encryption of 0, used as the "debit nothing" branch of clamped debits
ZERO_ACCOUNT_KEY = bytes(ACCOUNT_KEY_SIZE)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class LedgerServiceConfig:
    """Configuration for the ledger service"""

    data_dir: str
    db_file: str
    storage_backend: Literal["sqlite", "memory"] = "sqlite"
    transfer_write_mode: TransferWriteMode = TransferWriteMode.ATOMIC

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_file)


def make_storage(config: LedgerServiceConfig, logger: Logger) -> CiphertextStorage:
    if config.storage_backend == "memory":
        logger.warning("Using non-durable in-memory storage, balances are lost on exit")
        return MemoryCiphertextStorage()
    if config.storage_backend == "sqlite":
        logger.info(
            LogMessage(
                message="Using sqlite storage",
                structured_log_message_data={"db_path": config.db_path},
            )
        )
        return SQLiteCiphertextStorage(config.db_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class LedgerService(ILedgerService):
    __slots__ = (
        "_storage",
        "_engine",
        "_keys",
        "_logger",
        "_write_mode",
        "_engine_executor",
    )

    _storage: CiphertextStorage
    _engine: IHomomorphicEngine
    _keys: KeySet
    _logger: Logger
    _write_mode: TransferWriteMode
    # every engine call runs on this one thread, scheme handles are not shared across threads
    _engine_executor: ThreadPoolExecutor

    def __init__(
        self,
        storage: CiphertextStorage,
        engine: IHomomorphicEngine,
        keys: KeySet,
        logger: Logger,
        write_mode: TransferWriteMode = TransferWriteMode.ATOMIC,
    ):
        self._storage = storage
        self._engine = engine
        self._keys = keys
        self._logger = logger
        self._write_mode = write_mode
        self._engine_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ledger-engine"
        )

    @classmethod
    def from_config(
        cls,
        config: LedgerServiceConfig,
        engine: IHomomorphicEngine,
        keys: KeySet,
        logger: Logger,
    ) -> LedgerService:
        return cls(
            make_storage(config, logger),
            engine,
            keys,
            logger,
            config.transfer_write_mode,
        )

    @property
    def write_mode(self) -> TransferWriteMode:
        return self._write_mode

    @property
    @override
    def max_amount(self) -> int:
        return min(U64_MAX, 2**self._engine.plaintext_bits - 1)

    @override
    def close(self) -> None:
        self._engine_executor.shutdown(wait=True)

    @override
    async def initialize(self) -> None:
        self._logger.info("Initializing ledger storage")
        await self._run_store(self._storage.initialize)
        if await self._run_store(self._storage.contains, ZERO_ACCOUNT_KEY):
            self._logger.info("Zero account already populated")
            return
        with self._operation("populate_zero", {"key": ZERO_ACCOUNT_KEY.hex()}):
            await self._encrypt_and_upsert(ZERO_ACCOUNT_KEY, 0)
        self._logger.info("Zero account populated")

    @override
    async def deposit(self, key: bytes, amount: int) -> None:
        key = validate_account_key(key)
        # depositing 0 into the zero account repopulates it, clients bootstrap this way
        if not (key == ZERO_ACCOUNT_KEY and amount == 0):
            key = self._account_key(key)
        with self._operation("deposit", {"key": key.hex()}):
            await self._encrypt_and_upsert(key, amount)

    @override
    async def transfer(
        self, sender_key: bytes, recipient_key: bytes, amount: Amount
    ) -> None:
        sender_key = self._account_key(sender_key)
        recipient_key = self._account_key(recipient_key)
        with self._operation(
            "transfer",
            {
                "sender_key": sender_key.hex(),
                "recipient_key": recipient_key.hex(),
                "write_mode": self._write_mode.value,
            },
        ):
            # join-all, the first failure aborts before anything is written
            sender_balance, recipient_balance, transfer_amount, zero = (
                await asyncio.gather(
                    self._fetch_live(sender_key),
                    self._fetch_live(recipient_key),
                    self._prepare_amount(amount),
                    self._fetch_live(ZERO_ACCOUNT_KEY),
                )
            )
            if sender_key == recipient_key:
                # debit and credit cancel out, rewrite the balance unchanged
                blob = await self._run_engine(self._serialize, sender_balance)
                await self._write_updates([(sender_key, blob)])
                return

            new_sender, new_recipient = await self._run_engine(
                self._evaluate_transfer,
                sender_balance,
                recipient_balance,
                transfer_amount,
                zero,
            )
            await self._write_updates(
                [(sender_key, new_sender), (recipient_key, new_recipient)]
            )

    @override
    async def withdraw(self, key: bytes, amount: Amount) -> int:
        key = self._account_key(key)
        with self._operation("withdraw", {"key": key.hex()}):
            balance, withdraw_amount, zero = await asyncio.gather(
                self._fetch_live(key),
                self._prepare_amount(amount),
                self._fetch_live(ZERO_ACCOUNT_KEY),
            )
            new_balance = await self._run_engine(
                self._clamped_debit, balance, withdraw_amount, zero
            )
            blob = await self._run_engine(self._serialize, new_balance)
            await self._write_updates([(key, blob)])
            return await self._run_engine(
                self._engine.decrypt, self._keys.client_key, new_balance
            )

    @override
    async def view(self, key: bytes) -> int:
        key = validate_account_key(key)
        with self._operation("view", {"key": key.hex()}):
            value = await self._fetch_live(key)
            return await self._run_engine(
                self._engine.decrypt, self._keys.client_key, value
            )

    def _account_key(self, key: bytes) -> bytes:
        """Validates a key that an operation is about to write to."""
        key = validate_account_key(key)
        if key == ZERO_ACCOUNT_KEY:
            raise ValueError("The zero account is reserved and cannot be written to")
        return key

    async def _encrypt_and_upsert(self, key: bytes, amount: int) -> None:
        encrypted = await self._run_engine(
            self._engine.encrypt, self._keys.client_key, amount
        )
        blob = await self._run_engine(self._serialize, encrypted)
        await self._run_store(self._storage.upsert, key, blob)

    async def _fetch_live(self, key: bytes) -> EncryptedUInt64:
        blob = await self._run_store(self._storage.get, key)
        return await self._run_engine(
            self._engine.deserialize_and_prepare, self._keys.server_key, blob
        )

    async def _prepare_amount(self, amount: Amount) -> EncryptedUInt64:
        if isinstance(amount, StoredAmount):
            return await self._fetch_live(validate_account_key(amount.key))
        if isinstance(amount, (bytes, bytearray)):
            return await self._run_engine(
                self._engine.deserialize_and_prepare, self._keys.server_key, amount
            )
        raise ValueError(
            f"Amount must be an at-rest ciphertext or a StoredAmount, got {type(amount).__name__}"
        )

    def _serialize(self, value: EncryptedUInt64) -> bytes:
        return self._engine.compress_and_serialize(self._keys.server_key, value)

    def _clamped_debit(
        self, balance: EncryptedUInt64, amount: EncryptedUInt64, zero: EncryptedUInt64
    ) -> EncryptedUInt64:
        return self._engine.subtract(
            self._keys.server_key, balance, self._clamp(balance, amount, zero)
        )

    def _clamp(
        self, balance: EncryptedUInt64, amount: EncryptedUInt64, zero: EncryptedUInt64
    ) -> EncryptedUInt64:
        """amount if balance >= amount else zero, evaluated under encryption."""
        server_key = self._keys.server_key
        condition = self._engine.compare_greater_equal(server_key, balance, amount)
        return self._engine.select(server_key, condition, amount, zero)

    def _evaluate_transfer(
        self,
        sender_balance: EncryptedUInt64,
        recipient_balance: EncryptedUInt64,
        amount: EncryptedUInt64,
        zero: EncryptedUInt64,
    ) -> Tuple[bytes, bytes]:
        server_key = self._keys.server_key
        real_amount = self._clamp(sender_balance, amount, zero)
        new_sender = self._engine.subtract(server_key, sender_balance, real_amount)
        new_recipient = self._engine.add(server_key, recipient_balance, real_amount)
        return self._serialize(new_sender), self._serialize(new_recipient)

    async def _write_updates(self, updates: list[Tuple[bytes, bytes]]) -> None:
        if self._write_mode == TransferWriteMode.ATOMIC:
            affected = await self._run_store(self._storage.update_existing_many, updates)
            if affected != len(updates):
                self._logger.debug(
                    LogMessage(
                        message="Not every key had a row to update",
                        structured_log_message_data={
                            "keys": [key.hex() for key, _ in updates],
                            "rows_affected": affected,
                        },
                    )
                )
            return
        for key, blob in updates:
            if await self._run_store(self._storage.update_existing, key, blob) == 0:
                self._logger.debug(
                    LogMessage(
                        message="No row found with the given key",
                        structured_log_message_data={"key": key.hex()},
                    )
                )

    async def _run_store(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except (LedgerError, ValueError):
            raise
        except Exception as e:
            raise StoreError(f"Storage call {func.__name__} failed: {e}") from e

    async def _run_engine(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._engine_executor, func, *args)
        except (LedgerError, ValueError):
            raise
        except Exception as e:
            raise OperationError(f"Engine call {func.__name__} failed: {e}") from e

    @contextmanager
    def _operation(self, operation: str, data: Dict[str, Any]) -> Iterator[None]:
        start_time = datetime.now()
        self._logger.debug(
            LogMessage(
                message=f"Processing {operation} request",
                structured_log_message_data={"operation": operation, **data},
            )
        )
        try:
            yield
        except LedgerError as e:
            self._logger.error(
                LogMessage(
                    message=f"Error processing {operation} request",
                    structured_log_message_data={
                        "operation": operation,
                        "error_kind": e.kind.value,
                        **data,
                    },
                    error=e,
                )
            )
            raise
        except ValueError as e:
            self._logger.error(
                LogMessage(
                    message=f"Invalid {operation} request",
                    structured_log_message_data={"operation": operation, **data},
                    error=e,
                )
            )
            raise
        end_time = datetime.now()
        self._logger.debug(
            LogMessage(
                message=f"{operation} request processed",
                structured_log_message_data={
                    "operation": operation,
                    "processing_time": (end_time - start_time).total_seconds(),
                    **data,
                },
            )
        )
