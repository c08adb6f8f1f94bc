"""Error taxonomy shared by the ledger core.

Every failure raised by the store, the engine or the ledger service is a
LedgerError carrying an ErrorKind tag. The request surface decides how much of
that tag it exposes.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    DECODE_ERROR = "decode_error"
    OPERATION_ERROR = "operation_error"
    STORE_ERROR = "store_error"


class LedgerError(Exception):
    """Base class for all errors raised by the ledger core.

    Attributes:
        kind: The tag identifying which part of the taxonomy the error belongs to.
    """

    kind: ErrorKind = ErrorKind.OPERATION_ERROR

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class NotFoundError(LedgerError):
    """Raised when no record exists for an account key."""

    kind = ErrorKind.NOT_FOUND


class DecodeError(LedgerError):
    """Raised when ciphertext bytes are malformed or were produced under other parameters."""

    kind = ErrorKind.DECODE_ERROR


class OperationError(LedgerError):
    """Raised when the encryption scheme reports a failure while evaluating."""

    kind = ErrorKind.OPERATION_ERROR


class StoreError(LedgerError):
    """Raised when the persistence engine fails."""

    kind = ErrorKind.STORE_ERROR
