"""
FastAPI application entry point for the GateFlow access API.

The payment provider client is built once at startup from settings and
shared through app.state.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from gateflow import __version__
from gateflow.api.routes import access
from gateflow.api.routes import payments
from gateflow.api.routes import refund_requests
from gateflow.config.settings import get_settings
from gateflow.integrations.stripe.refund_client import build_refund_client

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting GateFlow access API")
    settings = get_settings()

    app.state.payment_provider = None
    if settings.stripe_secret_key:
        app.state.payment_provider = build_refund_client(settings)
        logger.info("Payment provider configured", extra={"api_base": settings.stripe_api_base})
    else:
        logger.warning("STRIPE_SECRET_KEY not set. Refund endpoints will return 503.")

    if not settings.database_url:
        logger.error("DATABASE_URL is not set. All endpoints will return 503.")
    if not settings.jwt_secret:
        logger.warning("GATEFLOW_JWT_SECRET not set. Authenticated endpoints will return 503.")

    yield

    if app.state.payment_provider is not None:
        await app.state.payment_provider.close()
    logger.info("Shutting down GateFlow access API")


app = FastAPI(
    title="GateFlow Access API",
    description="Product entitlements, guest claims and refund revocation",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(access.router)
app.include_router(payments.router)
app.include_router(refund_requests.router)
app.include_router(refund_requests.admin_router)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok", "version": __version__}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development",
    )
