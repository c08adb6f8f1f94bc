from __future__ import annotations

from base64 import b64decode
import binascii
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from confidential_ledger_backend.common.storage import ACCOUNT_KEY_SIZE
from confidential_ledger_backend.core.engine_interface import U64_MAX


def decode_key_field(value: Any, field_name_for_error: str) -> bytes:
    """Decodes a 32 byte field.

    Accepts a JSON array of integers in 0..255, as sent by existing clients, or a
    base64 encoded string.
    """
    if isinstance(value, list):
        if not all(
            isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255
            for b in value
        ):
            raise ValueError(
                f"Field '{field_name_for_error}' must only contain integers between 0 and 255"
            )
        data = bytes(value)
    elif isinstance(value, str):
        try:
            data = b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(
                f"Field '{field_name_for_error}' has invalid base64 data: {e}"
            )
    elif isinstance(value, bytes):
        data = value
    else:
        raise ValueError(
            f"Field '{field_name_for_error}' must be an array of bytes or a base64 encoded string, "
            f"received type {type(value).__name__}"
        )
    if len(data) != ACCOUNT_KEY_SIZE:
        raise ValueError(
            f"Field '{field_name_for_error}' must be {ACCOUNT_KEY_SIZE} bytes, got {len(data)}"
        )
    return data


class HTTPStatus(StrEnum):
    OK = "OK"
    ERROR = "ERROR"


class DepositRequest(BaseModel):
    """value is bounded to u64 here, the route also bounds it to the engine's plaintext width."""

    model_config = ConfigDict(frozen=True)

    key: bytes
    value: int = Field(ge=0, le=U64_MAX)

    @field_validator("key", mode="before")
    @classmethod
    def validate_key(cls, value: Any) -> bytes:
        return decode_key_field(value, "key")


class TransferRequest(BaseModel):
    """transfer_value references the record holding the encrypted amount."""

    model_config = ConfigDict(frozen=True)

    sender_key: bytes
    recipient_key: bytes
    transfer_value: bytes

    @field_validator("sender_key", "recipient_key", "transfer_value", mode="before")
    @classmethod
    def validate_keys(cls, value: Any, info: ValidationInfo) -> bytes:
        return decode_key_field(value, info.field_name)


class ViewRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: bytes

    @field_validator("key", mode="before")
    @classmethod
    def validate_key(cls, value: Any) -> bytes:
        return decode_key_field(value, "key")


class WithdrawRequest(BaseModel):
    """value references the record holding the encrypted amount to withdraw."""

    model_config = ConfigDict(frozen=True)

    key: bytes
    value: bytes

    @field_validator("key", "value", mode="before")
    @classmethod
    def validate_keys(cls, value: Any, info: ValidationInfo) -> bytes:
        return decode_key_field(value, info.field_name)


class ViewResponse(BaseModel):
    result: int


class HealthResponse(BaseModel):
    status: HTTPStatus
