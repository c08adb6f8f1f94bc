"""
Tests for the HTTP surface of the ledger.

Tests cover:
- 32 byte fields given as integer arrays or base64 strings
- request validation answered with 422
- every ledger failure answered with the same 500 body
- the route aliases kept for existing clients
"""

import asyncio
from base64 import b64encode

import pytest
from fastapi.testclient import TestClient

from conftest import TransparentEngine, account
from confidential_ledger_backend.client_networks.web2_http import (
    INTERNAL_FAILURE_DETAIL,
    Web2HTTPClientNetwork,
    Web2HTTPClientNetworkConfig,
)
from confidential_ledger_backend.common.logger import LogLevel
from confidential_ledger_backend.common.storage import MemoryCiphertextStorage
from confidential_ledger_backend.core.engine_interface import U64_MAX
from confidential_ledger_backend.core.ledger_service import LedgerService

A = account(0xA)
B = account(0xB)
AMOUNT = account(0xA1)


def as_array(key: bytes) -> list:
    return list(key)


@pytest.fixture
def client(engine, keys, logger):
    ledger = LedgerService(MemoryCiphertextStorage(), engine, keys, logger)
    asyncio.run(ledger.initialize())
    network = Web2HTTPClientNetwork(
        Web2HTTPClientNetworkConfig(port=3000, host="127.0.0.1"), ledger, logger
    )
    yield TestClient(network.app)
    ledger.close()


def deposit(client, key: bytes, value: int):
    return client.post("/post", json={"key": as_array(key), "value": value})


def view(client, key: bytes):
    return client.post("/decrypt", json={"key": as_array(key)})


class TestDeposit:
    def test_deposit_then_view(self, client):
        response = deposit(client, A, 100)
        assert response.status_code == 200
        assert response.content == b""
        assert view(client, A).json() == {"result": 100}

    def test_base64_key(self, client):
        encoded = b64encode(A).decode("ascii")
        assert client.post("/deposit", json={"key": encoded, "value": 7}).status_code == 200
        assert client.post("/view", json={"key": encoded}).json() == {"result": 7}

    @pytest.mark.parametrize(
        "key",
        [
            list(range(31)),
            list(range(33)),
            [256] + [0] * 31,
            [-1] + [0] * 31,
            "not base64!",
            b64encode(b"\x01" * 16).decode("ascii"),
            12,
        ],
    )
    def test_malformed_key(self, client, key):
        response = client.post("/post", json={"key": key, "value": 1})
        assert response.status_code == 422

    @pytest.mark.parametrize("value", [-1, U64_MAX + 1, "ten"])
    def test_value_out_of_range(self, client, value):
        response = client.post("/post", json={"key": as_array(A), "value": value})
        assert response.status_code == 422

    def test_zero_account_is_rejected(self, client, logger):
        response = deposit(client, bytes(32), 5)
        assert response.status_code == 500
        assert response.json() == {"detail": INTERNAL_FAILURE_DETAIL}
        assert view(client, bytes(32)).json() == {"result": 0}


class TestTransfer:
    def test_scenario(self, client):
        deposit(client, A, 100)
        deposit(client, B, 0)
        deposit(client, AMOUNT, 40)
        body = {
            "sender_key": as_array(A),
            "recipient_key": as_array(B),
            "transfer_value": as_array(AMOUNT),
        }
        assert client.post("/transfer", json=body).status_code == 200
        assert view(client, A).json() == {"result": 60}
        assert view(client, B).json() == {"result": 40}

        deposit(client, AMOUNT, 1000)
        assert client.post("/transfer", json=body).status_code == 200
        assert view(client, A).json() == {"result": 60}
        assert view(client, B).json() == {"result": 40}

        deposit(client, AMOUNT, 60)
        response = client.post(
            "/withdraw", json={"key": as_array(A), "value": as_array(AMOUNT)}
        )
        assert response.status_code == 200
        assert response.json() == {"result": 0}
        assert view(client, A).json() == {"result": 0}

    def test_missing_recipient_is_internal_failure(self, client, logger):
        deposit(client, A, 100)
        deposit(client, AMOUNT, 10)
        response = client.post(
            "/transfer",
            json={
                "sender_key": as_array(A),
                "recipient_key": as_array(B),
                "transfer_value": as_array(AMOUNT),
            },
        )
        assert response.status_code == 500
        assert response.json() == {"detail": INTERNAL_FAILURE_DETAIL}
        assert view(client, A).json() == {"result": 100}
        kinds = [
            m.structured_log_message_data.get("error_kind")
            for m in logger.at(LogLevel.ERROR)
        ]
        assert "not_found" in kinds

    def test_missing_field(self, client):
        response = client.post(
            "/transfer", json={"sender_key": as_array(A), "recipient_key": as_array(B)}
        )
        assert response.status_code == 422


class TestView:
    def test_missing_account(self, client):
        response = view(client, A)
        assert response.status_code == 500
        assert response.json() == {"detail": INTERNAL_FAILURE_DETAIL}

    def test_withdraw_clamped(self, client):
        deposit(client, A, 100)
        deposit(client, AMOUNT, 101)
        response = client.post(
            "/withdraw", json={"key": as_array(A), "value": as_array(AMOUNT)}
        )
        assert response.json() == {"result": 100}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "OK"}


def test_zero_account_bootstrap_deposit(client):
    response = client.post("/post", json={"key": [0] * 32, "value": 0})
    assert response.status_code == 200
    assert view(client, bytes(32)).json() == {"result": 0}


def test_deposit_beyond_engine_width(keys, logger):
    ledger = LedgerService(MemoryCiphertextStorage(), TransparentEngine(bits=32), keys, logger)
    asyncio.run(ledger.initialize())
    network = Web2HTTPClientNetwork(
        Web2HTTPClientNetworkConfig(port=3000, host="127.0.0.1"), ledger, logger
    )
    client = TestClient(network.app)
    try:
        assert deposit(client, A, 2**32 - 1).status_code == 200
        assert deposit(client, A, 2**32).status_code == 422
        assert view(client, A).json() == {"result": 2**32 - 1}
    finally:
        ledger.close()
