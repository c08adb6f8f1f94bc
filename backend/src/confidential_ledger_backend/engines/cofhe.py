"""Homomorphic engine backed by the cofhe network through pycofhe.

Integers are encrypted bitwise, one CLHSM2k ciphertext per bit, so that
comparisons can be evaluated by the network. The client node holds both the
network encryption key and the ability to request decryptions, so one
connected node backs both the client key and the server key handles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from pycofhe.cryptosystems import CPUCryptoSystemCipherText as CipherText
from pycofhe.network import make_cpu_cryptosystem_client_node, CPUCryptoSystemClientNode
from pycofhe.network import (
    encrypt_bitwise,
    decrypt_bitwise,
    homomorphic_nand,
    homomorphic_or,
    homomorphic_add,
    homomorphic_sub,
    homomorphic_eq,
    homomorphic_gt,
    serialize_bitwise,
    deserialize_bitwise,
)

from confidential_ledger_backend.common.logger import LogMessage, Logger
from confidential_ledger_backend.core.engine_interface import (
    ClientKey,
    IHomomorphicEngine,
    KeySet,
    ServerKey,
)


@dataclass(frozen=True, slots=True)
class CofheEngineConfig:
    """Where to reach the cofhe network"""

    client_node_ip: str
    client_node_port: str
    setup_node_ip: str
    setup_node_port: str
    cert_path: str
    # width of the bitwise encoding produced by encrypt_bitwise
    bit_width: int = 32


def provision_keys(config: CofheEngineConfig, logger: Logger) -> KeySet:
    """Connects the client node and wraps it as the client and server key handles.

    Raises:
        ValueError: If the node cannot be reached.
    """
    try:
        client_node = make_cpu_cryptosystem_client_node(
            config.client_node_ip,
            config.client_node_port,
            config.setup_node_ip,
            config.setup_node_port,
            config.cert_path,
        )
    except Exception as e:
        logger.error(
            LogMessage(
                message="Unable to connect to client node",
                structured_log_message_data={
                    "client_node_ip": config.client_node_ip,
                    "client_node_port": config.client_node_port,
                    "setup_node_ip": config.setup_node_ip,
                    "setup_node_port": config.setup_node_port,
                    "cert_path": config.cert_path,
                },
                error=e,
            )
        )
        raise ValueError(
            f"Unable to connect to setup node at {config.setup_node_ip}:{config.setup_node_port} or "
            f"client node at {config.client_node_ip}:{config.client_node_port}."
        ) from e
    logger.info(
        LogMessage(
            message="Connected to client node",
            structured_log_message_data={
                "network_details": client_node.network_details.to_string()
            },
        )
    )
    return KeySet(client_key=ClientKey(client_node), server_key=ServerKey(client_node))


class CofheEngine(IHomomorphicEngine):
    __slots__ = ("_bit_width",)

    _bit_width: int

    def __init__(self, bit_width: int = 32):
        self._bit_width = bit_width

    @property
    def name(self) -> str:
        return "cofhe"

    @property
    def plaintext_bits(self) -> int:
        return self._bit_width

    def _encrypt(self, client_key: ClientKey, plaintext: int) -> List[CipherText]:
        node = _node(client_key)
        return encrypt_bitwise(node.cryptosystem, node.network_encryption_key, plaintext)

    def _decrypt(self, client_key: ClientKey, inner: List[CipherText]) -> int:
        return decrypt_bitwise(_node(client_key), inner)

    def _serialize(self, server_key: ServerKey, inner: List[CipherText]) -> bytes | str:
        return serialize_bitwise(_node(server_key).cryptosystem, inner)

    def _deserialize(self, server_key: ServerKey, blob: bytes) -> List[CipherText]:
        bits = deserialize_bitwise(_node(server_key).cryptosystem, blob)
        if len(bits) != self._bit_width:
            raise ValueError(
                f"Expected {self._bit_width} encrypted bits, got {len(bits)}"
            )
        return bits

    def _greater_equal(
        self, server_key: ServerKey, a: List[CipherText], b: List[CipherText]
    ) -> CipherText:
        node = _node(server_key)
        return homomorphic_or(
            node,
            homomorphic_eq(node, a, b),
            homomorphic_gt(node, a, b),
        )

    def _select(
        self,
        server_key: ServerKey,
        condition: CipherText,
        if_true: List[CipherText],
        if_false: List[CipherText],
    ) -> List[CipherText]:
        # out = (c AND t) OR (NOT c AND f), per bit, using only NAND gates
        node = _node(server_key)
        not_condition = homomorphic_nand(node, condition, condition)
        return [
            homomorphic_nand(
                node,
                homomorphic_nand(node, condition, t),
                homomorphic_nand(node, not_condition, f),
            )
            for t, f in zip(if_true, if_false, strict=True)
        ]

    def _add(
        self, server_key: ServerKey, a: List[CipherText], b: List[CipherText]
    ) -> List[CipherText]:
        return homomorphic_add(_node(server_key), a, b)

    def _subtract(
        self, server_key: ServerKey, a: List[CipherText], b: List[CipherText]
    ) -> List[CipherText]:
        return homomorphic_sub(_node(server_key), a, b)


def _node(key: ClientKey | ServerKey) -> CPUCryptoSystemClientNode:
    return key.handle
