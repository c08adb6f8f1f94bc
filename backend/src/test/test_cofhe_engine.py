"""
Tests for the cofhe engine gate compositions.

The network calls are replaced with plaintext bit arithmetic, so these tests
check how the engine composes >= and the select out of the network gates.
"""

from types import SimpleNamespace

import pytest

pytest.importorskip("pycofhe")

from confidential_ledger_backend.common.errors import DecodeError, OperationError
from confidential_ledger_backend.core.engine_interface import ClientKey, ServerKey
from confidential_ledger_backend.engines import cofhe

WIDTH = 8


def to_bits(n: int) -> list:
    return [(n >> i) & 1 for i in reversed(range(WIDTH))]


def from_bits(bits: list) -> int:
    return int("".join(str(b) for b in bits), 2)


@pytest.fixture
def gates(monkeypatch):
    used = []

    def record(name, func):
        def wrapper(*args):
            used.append(name)
            return func(*args)

        monkeypatch.setattr(cofhe, name, wrapper)

    record("encrypt_bitwise", lambda cs, key, n: to_bits(n))
    record("decrypt_bitwise", lambda node, bits: from_bits(bits))
    record("serialize_bitwise", lambda cs, bits: bytes(bits))
    record("deserialize_bitwise", lambda cs, blob: list(blob))
    record("homomorphic_nand", lambda node, a, b: 1 - (a & b))
    record("homomorphic_or", lambda node, a, b: a | b)
    record("homomorphic_eq", lambda node, a, b: int(from_bits(a) == from_bits(b)))
    record("homomorphic_gt", lambda node, a, b: int(from_bits(a) > from_bits(b)))
    record(
        "homomorphic_add",
        lambda node, a, b: to_bits((from_bits(a) + from_bits(b)) % 2**WIDTH),
    )
    record(
        "homomorphic_sub",
        lambda node, a, b: to_bits((from_bits(a) - from_bits(b)) % 2**WIDTH),
    )
    return used


@pytest.fixture
def node():
    return SimpleNamespace(cryptosystem="cs", network_encryption_key="pk")


@pytest.fixture
def cofhe_engine():
    return cofhe.CofheEngine(bit_width=WIDTH)


def test_round_trip(gates, node, cofhe_engine):
    client_key, server_key = ClientKey(node), ServerKey(node)
    blob = cofhe_engine.compress_and_serialize(
        server_key, cofhe_engine.encrypt(client_key, 200)
    )
    value = cofhe_engine.deserialize_and_prepare(server_key, blob)
    assert cofhe_engine.decrypt(client_key, value) == 200


def test_encrypt_beyond_bit_width(gates, node, cofhe_engine):
    with pytest.raises(OperationError):
        cofhe_engine.encrypt(ClientKey(node), 2**WIDTH)


def test_wrong_bit_count_is_decode_error(gates, node, cofhe_engine):
    with pytest.raises(DecodeError):
        cofhe_engine.deserialize_and_prepare(ServerKey(node), bytes(WIDTH - 1))


@pytest.mark.parametrize("a, b, expected", [(5, 3, 1), (3, 3, 1), (2, 3, 0)])
def test_greater_equal_is_eq_or_gt(gates, node, cofhe_engine, a, b, expected):
    client_key, server_key = ClientKey(node), ServerKey(node)
    result = cofhe_engine.compare_greater_equal(
        server_key,
        cofhe_engine.encrypt(client_key, a),
        cofhe_engine.encrypt(client_key, b),
    )
    assert result.inner == expected
    assert {"homomorphic_eq", "homomorphic_gt", "homomorphic_or"} <= set(gates)


@pytest.mark.parametrize("condition, expected", [(1, 0b10110010), (0, 0b01001101)])
def test_select_from_nand_gates(gates, node, cofhe_engine, condition, expected):
    client_key, server_key = ClientKey(node), ServerKey(node)
    encrypted_condition = cofhe_engine.compare_greater_equal(
        server_key,
        cofhe_engine.encrypt(client_key, condition),
        cofhe_engine.encrypt(client_key, 1),
    )
    selected = cofhe_engine.select(
        server_key,
        encrypted_condition,
        cofhe_engine.encrypt(client_key, 0b10110010),
        cofhe_engine.encrypt(client_key, 0b01001101),
    )
    assert cofhe_engine.decrypt(client_key, selected) == expected


def test_arithmetic(gates, node, cofhe_engine):
    client_key, server_key = ClientKey(node), ServerKey(node)
    a = cofhe_engine.encrypt(client_key, 60)
    b = cofhe_engine.encrypt(client_key, 40)
    assert cofhe_engine.decrypt(client_key, cofhe_engine.add(server_key, a, b)) == 100
    assert cofhe_engine.decrypt(client_key, cofhe_engine.subtract(server_key, a, b)) == 20


def test_provision_keys_failure(monkeypatch, logger):
    def unreachable(*args):
        raise ConnectionError("refused")

    monkeypatch.setattr(cofhe, "make_cpu_cryptosystem_client_node", unreachable)
    config = cofhe.CofheEngineConfig("127.0.0.1", "1", "127.0.0.1", "2", "cert.pem")
    with pytest.raises(ValueError):
        cofhe.provision_keys(config, logger)
    assert logger.messages[-1].message == "Unable to connect to client node"
