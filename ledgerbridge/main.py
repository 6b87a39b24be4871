"""
FastAPI application factory with middleware, CORS, and request tracing.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledgerbridge.config import get_settings
from ledgerbridge.connectors.errors import (
    AuthRequired,
    ConnectorError,
    UpstreamError,
    UpstreamTimeout,
)
from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.connectors.oauth_client import KledoOAuthClient, TokenRefreshFailed
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.connectors.webhook_handler import XenditWebhookHandler
from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.routers import accounting, oauth, sync, transactions, webhook
from ledgerbridge.services.transfer_service import TransferError, TransferOrchestrator
from ledgerbridge.storage import TokenStore, get_storage
from ledgerbridge.storage.duckdb_storage import StorageError
from ledgerbridge.utils.logging import configure_logging, get_logger

# Configure logging at module level
configure_logging()
logger = get_logger(__name__)

# Most specific first
_CONNECTOR_STATUS_CODES = (
    (AuthRequired, 401),
    (TokenRefreshFailed, 401),
    (UpstreamTimeout, 504),
    (UpstreamError, 502),
)


def _error_response(status_code: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": code, "detail": detail},
    )


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    status_code = 502
    for error_type, mapped in _CONNECTOR_STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = mapped
            break

    logger.warning(
        "connector_error",
        path=request.url.path,
        error=exc.code,
        status_code=status_code,
    )
    return _error_response(status_code, exc.code, str(exc))


async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
    logger.warning("transfer_error", path=request.url.path, error=exc.code)
    return _error_response(exc.status_code, exc.code, str(exc))


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error", path=request.url.path, error=str(exc))
    return _error_response(500, exc.code, "Storage operation failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Builds the shared HTTP client and service graph; closes the client on shutdown.
    """
    settings = get_settings()

    # Startup
    logger.info(
        "application_startup",
        version=app.version,
        dev_mode=settings.dev_mode,
        kledo_configured=bool(settings.kledo_client_id and settings.kledo_client_secret),
        xendit_configured=bool(settings.xendit_secret_key),
    )

    http_client = httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        transport=app.state.http_transport,
    )
    storage = get_storage()

    oauth_client = KledoOAuthClient(
        http_client,
        client_id=settings.kledo_client_id,
        client_secret=settings.kledo_client_secret,
        redirect_uri=settings.kledo_redirect_uri,
        authorize_url=settings.kledo_authorize_url,
        token_url=settings.kledo_token_url,
        scope=settings.kledo_scope,
    )
    token_manager = TokenManager(TokenStore(storage), oauth_client)
    kledo_client = KledoClient(
        http_client,
        token_manager,
        base_url=settings.kledo_api_base_url,
        contract=settings.accounting_contract,
        max_attempts=settings.http_max_attempts,
        backoff_seconds=settings.http_backoff_seconds,
    )
    xendit_client = XenditClient(
        http_client,
        secret_key=settings.xendit_secret_key,
        base_url=settings.xendit_api_base_url,
        max_attempts=settings.http_max_attempts,
        backoff_seconds=settings.http_backoff_seconds,
    )
    orchestrator = TransferOrchestrator(
        kledo_client,
        storage,
        xendit=xendit_client,
        default_contact_group_name=settings.default_contact_group_name,
        default_contact_name=settings.default_contact_name,
        invoice_due_days=settings.invoice_due_days,
    )

    app.state.http_client = http_client
    app.state.storage = storage
    app.state.oauth_client = oauth_client
    app.state.token_manager = token_manager
    app.state.kledo_client = kledo_client
    app.state.xendit_client = xendit_client
    app.state.orchestrator = orchestrator
    app.state.webhook_handler = XenditWebhookHandler(settings.xendit_webhook_token, orchestrator)

    yield

    # Shutdown
    await http_client.aclose()
    logger.info("application_shutdown")


def create_app(http_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.

    Args:
        http_transport: Transport for outbound calls (tests pass a MockTransport)
    """
    settings = get_settings()

    app = FastAPI(
        title="LedgerBridge API",
        description="Mirrors paid Xendit invoices into Kledo as invoices and payments",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.http_transport = http_transport

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind request ID to structlog context
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )

            return response
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "internal_error",
                    "detail": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

    app.add_exception_handler(ConnectorError, connector_error_handler)
    app.add_exception_handler(TransferError, transfer_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": app.version,
        }

    # Include routers
    app.include_router(webhook.router, tags=["Webhook"])
    app.include_router(oauth.router, prefix="/oauth", tags=["OAuth"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])
    app.include_router(transactions.router, prefix="/transactions", tags=["Transactions"])
    app.include_router(accounting.router, prefix="/accounting", tags=["Accounting"])

    logger.info("application_configured", routers_count=5)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ledgerbridge.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
