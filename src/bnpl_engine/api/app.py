"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from bnpl_engine.api.routes import (
    early_payments_router,
    health_router,
    payments_router,
    transactions_router,
    webhooks_router,
)
from bnpl_engine.config import Settings, get_settings
from bnpl_engine.engine import InstallmentEngine, build_engine
from bnpl_engine.errors import (
    BnplEngineError,
    ConcurrentModificationError,
    EarlyPaymentDeclinedError,
    GatewayPayloadError,
    GatewaySignatureError,
    GatewayTimeoutError,
    InvalidPlanError,
    InvalidTransitionError,
    NotEligibleForEarlyPaymentError,
    NotFoundError,
    QuoteExpiredError,
)

logger = logging.getLogger(__name__)

# Engine error -> (HTTP status, error code). Lookup follows the class MRO.
ERROR_STATUS: dict[type[BnplEngineError], tuple[int, str]] = {
    BnplEngineError: (status.HTTP_400_BAD_REQUEST, "ENGINE_ERROR"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    InvalidPlanError: (422, "INVALID_PLAN"),
    InvalidTransitionError: (status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    ConcurrentModificationError: (status.HTTP_409_CONFLICT, "CONCURRENT_MODIFICATION"),
    NotEligibleForEarlyPaymentError: (status.HTTP_409_CONFLICT, "NOT_ELIGIBLE"),
    QuoteExpiredError: (status.HTTP_410_GONE, "QUOTE_EXPIRED"),
    EarlyPaymentDeclinedError: (status.HTTP_402_PAYMENT_REQUIRED, "PAYMENT_DECLINED"),
    GatewaySignatureError: (status.HTTP_401_UNAUTHORIZED, "INVALID_SIGNATURE"),
    GatewayPayloadError: (status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD"),
    GatewayTimeoutError: (status.HTTP_504_GATEWAY_TIMEOUT, "GATEWAY_TIMEOUT"),
}


def error_status(exc: BnplEngineError) -> tuple[int, str]:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return ERROR_STATUS[BnplEngineError]


def create_app(
    engine: InstallmentEngine | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Prebuilt engine (tests); built from settings at startup if None
        settings: Settings used to build the engine
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        # Startup
        if engine is None:
            app.state.engine = build_engine(settings or get_settings())
            logger.info("Installment engine started")
        yield
        # Shutdown

    app = FastAPI(
        title="BNPL Installment Engine API",
        description="Buy-now-pay-later installment plans, collection and early settlement",
        version="0.1.0",
        lifespan=lifespan,
    )
    if engine is not None:
        app.state.engine = engine

    # Exception handlers
    @app.exception_handler(BnplEngineError)
    async def engine_exception_handler(request: Request, exc: BnplEngineError) -> JSONResponse:
        """Map engine errors to HTTP responses."""
        status_code, code = error_status(exc)
        if isinstance(exc, GatewaySignatureError):
            logger.warning("Rejected webhook delivery: %s", exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(transactions_router, prefix="/api/v1")
    app.include_router(early_payments_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
