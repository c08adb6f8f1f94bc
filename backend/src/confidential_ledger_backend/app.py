from __future__ import annotations

import os

from confidential_ledger_backend.cli import CliArgs
from confidential_ledger_backend.common.utils.json_utils import read_json_config
from confidential_ledger_backend.common.logger import LogMessage, Logger, StandardLogger
from confidential_ledger_backend.core.engine_interface import IHomomorphicEngine, KeySet
from confidential_ledger_backend.core.ledger_service import (
    LedgerService,
    LedgerServiceConfig,
)
from confidential_ledger_backend.core.ledger_service_interface import TransferWriteMode
from confidential_ledger_backend.client_networks.web2_http import (
    Web2HTTPClientNetwork,
    Web2HTTPClientNetworkConfig,
)


config_schema = {
    "type": "object",
    "properties": {
        "ledger": {
            "type": "object",
            "properties": {
                "data_dir": {"type": "string"},
                "db_file": {"type": "string"},
                "storage_backend": {
                    "type": "string",
                    "enum": ["sqlite", "memory"],
                },
                "transfer_write_mode": {
                    "type": "string",
                    "enum": [mode.value for mode in TransferWriteMode],
                },
            },
            "required": ["data_dir", "db_file"],
        },
        "engine": {
            "type": "object",
            "properties": {
                "backend": {"type": "string", "enum": ["cofhe"]},
                "client_node_ip": {"type": "string"},
                "client_node_port": {"type": "string"},
                "setup_node_ip": {"type": "string"},
                "setup_node_port": {"type": "string"},
                "cert_path": {"type": "string"},
                "bit_width": {"type": "integer", "minimum": 1, "maximum": 64},
            },
            "required": [
                "backend",
                "client_node_ip",
                "client_node_port",
                "setup_node_ip",
                "setup_node_port",
                "cert_path",
            ],
        },
        "logger": {
            "type": "object",
            "properties": {
                "config_path": {"type": "string"},
            },
            "required": ["config_path"],
        },
        "web2_http": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer"},
                "ssl_key_path": {"type": "string"},
                "ssl_cert_path": {"type": "string"},
            },
            "required": [
                "host",
                "port",
            ],
        },
    },
    "required": [
        "ledger",
        "engine",
        "logger",
        "web2_http",
    ],
}


def ledger_config_from_dict(config: dict) -> LedgerServiceConfig:
    return LedgerServiceConfig(
        data_dir=config["data_dir"],
        db_file=config["db_file"],
        storage_backend=config.get("storage_backend", "sqlite"),
        transfer_write_mode=TransferWriteMode(
            config.get("transfer_write_mode", TransferWriteMode.ATOMIC.value)
        ),
    )


def web2_http_config_from_dict(config: dict) -> Web2HTTPClientNetworkConfig:
    return Web2HTTPClientNetworkConfig(
        host=config["host"],
        port=config["port"],
        ssl_key_path=config.get("ssl_key_path", None),
        ssl_cert_path=config.get("ssl_cert_path", None),
    )


class App:
    __slots__ = (
        "_config",
        "_cli_args",
        "_engine",
        "_keys",
        "_ledger",
        "_client_network",
        "_logger",
    )

    _config: dict
    _cli_args: CliArgs
    _engine: IHomomorphicEngine
    _keys: KeySet
    _ledger: LedgerService
    _client_network: Web2HTTPClientNetwork
    _logger: Logger

    def __init__(
        self,
        cli_args: CliArgs,
        engine: IHomomorphicEngine | None = None,
        keys: KeySet | None = None,
    ):
        """Reads the config and wires the service together.

        engine and keys replace the configured engine backend when both are given.
        """
        self._cli_args = cli_args
        self._config = read_json_config(cli_args.config_file_path, config_schema)
        self._logger = StandardLogger(
            self._config["logger"]["config_path"],
        )
        self.__init(engine, keys)

    @property
    def ledger(self) -> LedgerService:
        return self._ledger

    @property
    def client_network(self) -> Web2HTTPClientNetwork:
        return self._client_network

    async def initialize(self) -> None:
        await self._ledger.initialize()

    async def run(self):
        self._logger.info("Starting services")
        await self.initialize()
        self._logger.info("App started")
        try:
            await self._client_network.run()
        finally:
            self._client_network.stop()
            self._ledger.close()
            self._logger.info("Services stopped")

    def __init(
        self, engine: IHomomorphicEngine | None, keys: KeySet | None
    ) -> None:
        self._logger.info("Initializing app")
        self._init_data_dir()
        if engine is not None and keys is not None:
            self._engine, self._keys = engine, keys
        else:
            self._init_engine()
        self._init_ledger()
        self._init_client_network()

    def _init_data_dir(self):
        data_dir = self._config["ledger"]["data_dir"]
        if not os.path.exists(data_dir):
            self._logger.info(
                LogMessage(
                    message="Creating data directory",
                    structured_log_message_data={"data_dir": data_dir},
                )
            )
            os.makedirs(data_dir, exist_ok=True)

    def _init_engine(self):
        engine_config = self._config["engine"]
        self._logger.info(
            LogMessage(
                message="Initializing homomorphic engine",
                structured_log_message_data={"backend": engine_config["backend"]},
            )
        )
        if engine_config["backend"] == "cofhe":
            # pycofhe is an optional dependency, only imported when configured
            from confidential_ledger_backend.engines.cofhe import (
                CofheEngine,
                CofheEngineConfig,
                provision_keys,
            )

            cofhe_config = CofheEngineConfig(
                client_node_ip=engine_config["client_node_ip"],
                client_node_port=engine_config["client_node_port"],
                setup_node_ip=engine_config["setup_node_ip"],
                setup_node_port=engine_config["setup_node_port"],
                cert_path=engine_config["cert_path"],
                bit_width=engine_config.get("bit_width", 32),
            )
            self._keys = provision_keys(cofhe_config, self._logger)
            self._engine = CofheEngine(cofhe_config.bit_width)
        else:
            raise ValueError(f"Unknown engine backend: {engine_config['backend']}")
        self._logger.info("Homomorphic engine initialized")

    def _init_ledger(self):
        self._logger.info("Initializing ledger service")
        ledger_config = ledger_config_from_dict(self._config["ledger"])
        self._ledger = LedgerService.from_config(
            ledger_config, self._engine, self._keys, self._logger
        )
        self._logger.info(
            LogMessage(
                message="Ledger service initialized",
                structured_log_message_data={
                    "storage_backend": ledger_config.storage_backend,
                    "transfer_write_mode": ledger_config.transfer_write_mode.value,
                },
            )
        )

    def _init_client_network(self):
        self._logger.info("Initializing web2 HTTP client network")
        self._client_network = Web2HTTPClientNetwork(
            web2_http_config_from_dict(self._config["web2_http"]),
            self._ledger,
            self._logger,
            self._config["logger"]["config_path"],
        )
        self._logger.info("Web2 HTTP client network initialized")
