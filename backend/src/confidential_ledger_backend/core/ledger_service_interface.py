from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum


class TransferWriteMode(StrEnum):
    # sender and recipient updates land in one transaction
    ATOMIC = "atomic"
    # two independent updates, a failure in between leaves the sender debited only
    SEQUENTIAL = "sequential"


@dataclass(frozen=True, slots=True)
class StoredAmount:
    """Reference to a ledger record whose ciphertext is used as an amount."""

    key: bytes


Amount = bytes | StoredAmount


class ILedgerService(ABC):
    @property
    @abstractmethod
    def max_amount(self) -> int:
        """Largest plaintext amount the engine can encrypt"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the resources held by the service"""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the store and populate the reserved zero account"""
        pass

    @abstractmethod
    async def deposit(self, key: bytes, amount: int) -> None:
        """Set the balance of the account to exactly amount, creating it if needed"""
        pass

    @abstractmethod
    async def transfer(
        self, sender_key: bytes, recipient_key: bytes, amount: Amount
    ) -> None:
        """Move amount from sender to recipient if the sender can cover it, else change nothing"""
        pass

    @abstractmethod
    async def withdraw(self, key: bytes, amount: Amount) -> int:
        """Debit amount if covered and return the new plaintext balance"""
        pass

    @abstractmethod
    async def view(self, key: bytes) -> int:
        """Return the plaintext balance of the account"""
        pass
