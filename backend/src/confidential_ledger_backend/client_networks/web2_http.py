from __future__ import annotations

from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi import Response as FastAPIResponse
from fastapi.middleware.cors import CORSMiddleware

from confidential_ledger_backend.common.errors import LedgerError
from confidential_ledger_backend.common.logger import LogMessage, Logger
from confidential_ledger_backend.core.ledger_service_interface import (
    ILedgerService,
    StoredAmount,
)
from confidential_ledger_backend.client_networks.request_response import (
    DepositRequest,
    HealthResponse,
    HTTPStatus,
    TransferRequest,
    ViewRequest,
    ViewResponse,
    WithdrawRequest,
)

INTERNAL_FAILURE_DETAIL = "internal failure"


@dataclass(frozen=True, slots=True)
class Web2HTTPClientNetworkConfig:
    """
    Configuration for the Web2 HTTP client network.
    """

    port: int
    host: str
    ssl_key_path: str | None = None
    ssl_cert_path: str | None = None


class Web2HTTPClientNetwork:
    """
    HTTP surface of the ledger, built on FastAPI and served by uvicorn on the
    running event loop.

    Handlers decode the request into a ledger call and encode the result.
    Every failure, whatever its kind, is answered with the same 500 response.
    The kind is only written to the server log.
    """

    __slots__ = (
        "_app",
        "_config",
        "_ledger",
        "_logger",
        "_logger_config_path",
        "_server",
    )
    _app: FastAPI
    _config: Web2HTTPClientNetworkConfig
    _ledger: ILedgerService
    _logger: Logger
    _logger_config_path: str | None
    _server: uvicorn.Server | None

    def __init__(
        self,
        config: Web2HTTPClientNetworkConfig,
        ledger: ILedgerService,
        logger: Logger,
        logger_config_path: str | None = None,
    ):
        self._config = config
        self._ledger = ledger
        self._logger = logger
        self._logger_config_path = logger_config_path
        self._server = None
        self._app = FastAPI(title="Confidential Ledger")
        self._app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._setup_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    async def run(self) -> None:
        """
        Serve the FastAPI application until uvicorn receives a shutdown signal.
        """
        kwargs: dict = (
            {
                "ssl_keyfile": self._config.ssl_key_path,
                "ssl_certfile": self._config.ssl_cert_path,
            }
            if self._config.ssl_key_path and self._config.ssl_cert_path
            else {}
        )
        kwargs.update(
            {
                "host": self._config.host,
                "port": self._config.port,
            }
        )
        kwargs.update(
            {}
            if not self._logger_config_path
            else {"log_config": self._logger_config_path}
        )
        self._server = uvicorn.Server(uvicorn.Config(self._app, **kwargs))
        scheme = "https" if "ssl_keyfile" in kwargs else "http"
        self._logger.info(
            LogMessage(
                message=f"Uvicorn server starting on {scheme}://{self._config.host}:{self._config.port}"
            )
        )
        await self._server.serve()

    def stop(self) -> None:
        """
        Ask the uvicorn server to exit once in-flight requests are done.
        """
        if self._server is not None:
            self._server.should_exit = True
        self._logger.info("Web2HTTPClientNetwork stop called")

    def _internal_failure(self, operation: str, error: Exception) -> HTTPException:
        structured_log_message_data = {"operation": operation}
        if isinstance(error, LedgerError):
            structured_log_message_data["error_kind"] = error.kind.value
        self._logger.error(
            LogMessage(
                message=f"Error handling {operation} request.",
                structured_log_message_data=structured_log_message_data,
                error=error,
            )
        )
        return HTTPException(status_code=500, detail=INTERNAL_FAILURE_DETAIL)

    def _setup_routes(self):
        """
        Setup the HTTP routes for the FastAPI application.
        """

        @self._app.post("/post", status_code=200, response_class=FastAPIResponse)
        @self._app.post("/deposit", status_code=200, response_class=FastAPIResponse)
        async def handle_deposit(request: DepositRequest) -> FastAPIResponse:
            self._logger.debug(
                LogMessage(
                    message="Received deposit request.",
                    structured_log_message_data={"key": request.key.hex()},
                )
            )
            if request.value > self._ledger.max_amount:
                raise HTTPException(
                    status_code=422,
                    detail=f"Field 'value' must not exceed {self._ledger.max_amount}",
                )
            try:
                await self._ledger.deposit(request.key, request.value)
            except Exception as e:
                raise self._internal_failure("deposit", e)
            return FastAPIResponse(status_code=200)

        @self._app.post("/transfer", status_code=200, response_class=FastAPIResponse)
        async def handle_transfer(request: TransferRequest) -> FastAPIResponse:
            self._logger.debug(
                LogMessage(
                    message="Received transfer request.",
                    structured_log_message_data={
                        "sender_key": request.sender_key.hex(),
                        "recipient_key": request.recipient_key.hex(),
                        "transfer_value": request.transfer_value.hex(),
                    },
                )
            )
            try:
                await self._ledger.transfer(
                    request.sender_key,
                    request.recipient_key,
                    StoredAmount(request.transfer_value),
                )
            except Exception as e:
                raise self._internal_failure("transfer", e)
            return FastAPIResponse(status_code=200)

        @self._app.post("/decrypt", response_model=ViewResponse)
        @self._app.post("/view", response_model=ViewResponse)
        async def handle_view(request: ViewRequest) -> ViewResponse:
            self._logger.debug(
                LogMessage(
                    message="Received view request.",
                    structured_log_message_data={"key": request.key.hex()},
                )
            )
            try:
                result = await self._ledger.view(request.key)
            except Exception as e:
                raise self._internal_failure("view", e)
            return ViewResponse(result=result)

        @self._app.post("/withdraw", response_model=ViewResponse)
        async def handle_withdraw(request: WithdrawRequest) -> ViewResponse:
            self._logger.debug(
                LogMessage(
                    message="Received withdraw request.",
                    structured_log_message_data={
                        "key": request.key.hex(),
                        "value": request.value.hex(),
                    },
                )
            )
            try:
                result = await self._ledger.withdraw(
                    request.key, StoredAmount(request.value)
                )
            except Exception as e:
                raise self._internal_failure("withdraw", e)
            return ViewResponse(result=result)

        @self._app.get("/health", response_model=HealthResponse)
        async def handle_health() -> HealthResponse:
            return HealthResponse(status=HTTPStatus.OK)
