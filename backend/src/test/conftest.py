from __future__ import annotations

from typing import Any, AsyncIterator, List

import pytest
import pytest_asyncio

from confidential_ledger_backend.common.logger import LogLevel, LogMessage, Logger
from confidential_ledger_backend.common.storage import (
    MemoryCiphertextStorage,
    SQLiteCiphertextStorage,
)
from confidential_ledger_backend.core.engine_interface import (
    ClientKey,
    IHomomorphicEngine,
    KeySet,
    ServerKey,
)
from confidential_ledger_backend.core.ledger_service import LedgerService
from confidential_ledger_backend.core.ledger_service_interface import TransferWriteMode

_BLOB_MAGIC = b"TE1"


class _Opaque:
    """Keeps the plaintext out of reach of anything but the engine double."""

    __slots__ = ("_value",)

    def __init__(self, value: Any):
        self._value = value

    def __repr__(self) -> str:
        return "<ciphertext>"


class TransparentEngine(IHomomorphicEngine):
    """Engine double evaluating on plaintexts hidden in opaque wrappers.

    Records every call so tests can check which operations a protocol used.
    """

    def __init__(self, bits: int = 64):
        self._bits = bits
        self.calls: List[str] = []

    @property
    def name(self) -> str:
        return "transparent"

    @property
    def plaintext_bits(self) -> int:
        return self._bits

    def _encrypt(self, client_key: ClientKey, plaintext: int) -> _Opaque:
        assert client_key.handle == "client"
        self.calls.append("encrypt")
        return _Opaque(plaintext)

    def _decrypt(self, client_key: ClientKey, inner: _Opaque) -> int:
        assert client_key.handle == "client"
        self.calls.append("decrypt")
        return inner._value

    def _serialize(self, server_key: ServerKey, inner: _Opaque) -> bytes:
        self.calls.append("serialize")
        return _BLOB_MAGIC + inner._value.to_bytes(8, "big")

    def _deserialize(self, server_key: ServerKey, blob: bytes) -> _Opaque:
        self.calls.append("deserialize")
        if len(blob) != len(_BLOB_MAGIC) + 8 or not blob.startswith(_BLOB_MAGIC):
            raise ValueError("not a ciphertext")
        return _Opaque(int.from_bytes(blob[len(_BLOB_MAGIC):], "big"))

    def _greater_equal(self, server_key: ServerKey, a: _Opaque, b: _Opaque) -> _Opaque:
        assert server_key.handle == "server"
        self.calls.append("greater_equal")
        return _Opaque(a._value >= b._value)

    def _select(
        self, server_key: ServerKey, condition: _Opaque, if_true: _Opaque, if_false: _Opaque
    ) -> _Opaque:
        self.calls.append("select")
        return if_true if condition._value else if_false

    def _add(self, server_key: ServerKey, a: _Opaque, b: _Opaque) -> _Opaque:
        self.calls.append("add")
        return _Opaque((a._value + b._value) % 2**64)

    def _subtract(self, server_key: ServerKey, a: _Opaque, b: _Opaque) -> _Opaque:
        self.calls.append("subtract")
        return _Opaque((a._value - b._value) % 2**64)


class RecordingLogger(Logger):
    def __init__(self):
        super().__init__(LogLevel.TRACE)
        self.messages: List[LogMessage] = []

    def _emit(self, message: LogMessage) -> None:
        self.messages.append(message)

    def at(self, level: LogLevel) -> List[LogMessage]:
        return [m for m in self.messages if m.level == level]


def account(n: int) -> bytes:
    return n.to_bytes(32, "big")


@pytest.fixture
def keys() -> KeySet:
    return KeySet(client_key=ClientKey("client"), server_key=ServerKey("server"))


@pytest.fixture
def engine() -> TransparentEngine:
    return TransparentEngine()


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def sqlite_storage(tmp_path) -> SQLiteCiphertextStorage:
    storage = SQLiteCiphertextStorage(str(tmp_path / "data" / "ledger.db"))
    storage.initialize()
    return storage


@pytest.fixture(params=["sqlite", "memory"])
def storage(request, tmp_path):
    if request.param == "memory":
        return MemoryCiphertextStorage()
    storage = SQLiteCiphertextStorage(str(tmp_path / "data" / "ledger.db"))
    storage.initialize()
    return storage


@pytest_asyncio.fixture
async def ledger(sqlite_storage, engine, keys, logger) -> AsyncIterator[LedgerService]:
    service = LedgerService(
        sqlite_storage, engine, keys, logger, TransferWriteMode.ATOMIC
    )
    await service.initialize()
    yield service
    service.close()
