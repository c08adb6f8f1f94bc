"""The homomorphic arithmetic engine contract.

The engine wraps an external homomorphic encryption scheme. It is pure with
respect to stored state: no call performs I/O against the ciphertext store.
Evaluation calls take the server key explicitly instead of relying on a
process-wide active key, so concurrent requests never interfere.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from confidential_ledger_backend.common.errors import (
    DecodeError,
    LedgerError,
    OperationError,
)

U64_MAX = 2**64 - 1

T = TypeVar("T")


@dataclass(frozen=True, slots=True, eq=False)
class ServerKey:
    """Evaluation capability. Enables homomorphic operations, carries no decryption power."""

    handle: Any


@dataclass(frozen=True, slots=True, eq=False)
class ClientKey:
    """Secret capability able to encrypt plaintexts and decrypt ciphertexts."""

    handle: Any


@dataclass(frozen=True, slots=True)
class KeySet:
    client_key: ClientKey
    server_key: ServerKey


@dataclass(frozen=True, slots=True, eq=False)
class EncryptedUInt64:
    """A live (operation ready) encryption of an unsigned 64 bit integer."""

    inner: Any


@dataclass(frozen=True, slots=True, eq=False)
class EncryptedBool:
    """A live encryption of a boolean, as produced by comparisons."""

    inner: Any


class IHomomorphicEngine(ABC):
    """Interface every homomorphic engine implementation must provide.

    The public methods check their arguments and translate failures reported by
    the underlying scheme into the ledger error taxonomy. Implementations only
    provide the underscored methods:
    - _encrypt / _decrypt: need the client key.
    - _serialize / _deserialize: convert between the live form and the at-rest
    byte form. Lossless and deterministic.
    - _greater_equal, _select, _add, _subtract: evaluated with the server key,
    results stay encrypted.

    Errors raised are limited to DecodeError (malformed or incompatible bytes)
    and OperationError (scheme evaluation failure). Neither is retriable.
    """

    __slots__ = ()

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier of the engine, used in logs."""
        pass

    @property
    def plaintext_bits(self) -> int:
        """Width of the plaintext space. Schemes narrower than 64 bits override this."""
        return 64

    def encrypt(self, client_key: ClientKey, plaintext: int) -> EncryptedUInt64:
        """Encrypts an unsigned integer of at most plaintext_bits bits.

        Raises:
            OperationError: If the plaintext is out of range or encryption fails.
        """
        if isinstance(plaintext, bool) or not isinstance(plaintext, int):
            raise OperationError(
                f"Plaintext must be an int, got {type(plaintext).__name__}"
            )
        if plaintext < 0 or plaintext > min(U64_MAX, 2**self.plaintext_bits - 1):
            raise OperationError(
                f"Plaintext {plaintext} is outside the {self.plaintext_bits} bit range"
            )
        return EncryptedUInt64(
            self._guard(OperationError, "encrypt", self._encrypt, client_key, plaintext)
        )

    def decrypt(self, client_key: ClientKey, value: EncryptedUInt64) -> int:
        """Decrypts a live ciphertext to its plaintext.

        Raises:
            OperationError: If decryption fails.
        """
        _expect(value, EncryptedUInt64)
        result = self._guard(
            OperationError, "decrypt", self._decrypt, client_key, value.inner
        )
        return int(result)

    def compress_and_serialize(
        self, server_key: ServerKey, value: EncryptedUInt64
    ) -> bytes:
        """Packs a live ciphertext into its at-rest byte form.

        Raises:
            OperationError: If the scheme fails to serialize the ciphertext.
        """
        _expect(value, EncryptedUInt64)
        blob = self._guard(
            OperationError, "serialize", self._serialize, server_key, value.inner
        )
        return blob.encode("utf-8") if isinstance(blob, str) else bytes(blob)

    def deserialize_and_prepare(
        self, server_key: ServerKey, blob: bytes
    ) -> EncryptedUInt64:
        """Turns an at-rest blob back into a live ciphertext.

        Raises:
            DecodeError: If the blob is empty, malformed or version mismatched.
        """
        if not isinstance(blob, (bytes, bytearray)) or len(blob) == 0:
            raise DecodeError("Ciphertext blob must be non-empty bytes")
        return EncryptedUInt64(
            self._guard(
                DecodeError, "deserialize", self._deserialize, server_key, bytes(blob)
            )
        )

    def compare_greater_equal(
        self, server_key: ServerKey, a: EncryptedUInt64, b: EncryptedUInt64
    ) -> EncryptedBool:
        """Evaluates a >= b. The result is an encrypted boolean."""
        _expect(a, EncryptedUInt64)
        _expect(b, EncryptedUInt64)
        return EncryptedBool(
            self._guard(
                OperationError,
                "greater_equal",
                self._greater_equal,
                server_key,
                a.inner,
                b.inner,
            )
        )

    def select(
        self,
        server_key: ServerKey,
        condition: EncryptedBool,
        if_true: EncryptedUInt64,
        if_false: EncryptedUInt64,
    ) -> EncryptedUInt64:
        """Homomorphic ternary: if_true where condition holds, if_false otherwise."""
        _expect(condition, EncryptedBool)
        _expect(if_true, EncryptedUInt64)
        _expect(if_false, EncryptedUInt64)
        return EncryptedUInt64(
            self._guard(
                OperationError,
                "select",
                self._select,
                server_key,
                condition.inner,
                if_true.inner,
                if_false.inner,
            )
        )

    def add(
        self, server_key: ServerKey, a: EncryptedUInt64, b: EncryptedUInt64
    ) -> EncryptedUInt64:
        _expect(a, EncryptedUInt64)
        _expect(b, EncryptedUInt64)
        return EncryptedUInt64(
            self._guard(OperationError, "add", self._add, server_key, a.inner, b.inner)
        )

    def subtract(
        self, server_key: ServerKey, a: EncryptedUInt64, b: EncryptedUInt64
    ) -> EncryptedUInt64:
        """Evaluates a - b. Underflow is not detected, callers clamp b beforehand."""
        _expect(a, EncryptedUInt64)
        _expect(b, EncryptedUInt64)
        return EncryptedUInt64(
            self._guard(
                OperationError, "subtract", self._subtract, server_key, a.inner, b.inner
            )
        )

    @staticmethod
    def _guard(
        error_cls: type[LedgerError],
        operation: str,
        func: Callable[..., T],
        *args: Any,
    ) -> T:
        try:
            return func(*args)
        except LedgerError:
            raise
        except Exception as e:
            raise error_cls(f"Homomorphic {operation} failed: {e}") from e

    @abstractmethod
    def _encrypt(self, client_key: ClientKey, plaintext: int) -> Any:
        pass

    @abstractmethod
    def _decrypt(self, client_key: ClientKey, inner: Any) -> int:
        pass

    @abstractmethod
    def _serialize(self, server_key: ServerKey, inner: Any) -> bytes | str:
        pass

    @abstractmethod
    def _deserialize(self, server_key: ServerKey, blob: bytes) -> Any:
        pass

    @abstractmethod
    def _greater_equal(self, server_key: ServerKey, a: Any, b: Any) -> Any:
        pass

    @abstractmethod
    def _select(
        self, server_key: ServerKey, condition: Any, if_true: Any, if_false: Any
    ) -> Any:
        pass

    @abstractmethod
    def _add(self, server_key: ServerKey, a: Any, b: Any) -> Any:
        pass

    @abstractmethod
    def _subtract(self, server_key: ServerKey, a: Any, b: Any) -> Any:
        pass


def _expect(value: Any, expected: type) -> None:
    if not isinstance(value, expected):
        raise OperationError(
            f"Expected {expected.__name__}, got {type(value).__name__}"
        )
