from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.modules.billing import router as billing_webhook_router
from app.modules.billing.domain.billing.processor import WebhookProcessor
from app.modules.billing.domain.billing.providers import build_enabled_providers
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import LedgerlineException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.db.session import get_engine, health_check as db_health_check

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


def build_webhook_processors() -> dict[str, WebhookProcessor]:
    """One processor per enabled provider. Missing secrets fail here, at startup."""
    return {
        name: WebhookProcessor(adapter)
        for name, adapter in build_enabled_providers().items()
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME)

    if not getattr(app.state, "webhook_processors", None):
        app.state.webhook_processors = build_webhook_processors()

    yield

    logger.info("app_shutting_down")
    await get_engine().dispose()
    logger.info("db_engine_disposed")


ledgerline_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = ledgerline_app

__all__ = ["app", "ledgerline_app", "lifespan", "build_webhook_processors"]


@ledgerline_app.exception_handler(LedgerlineException)
async def ledgerline_exception_handler(
    request: Request, exc: LedgerlineException
) -> JSONResponse:
    """Handle application exceptions."""
    return handle_exception(request, exc)


@ledgerline_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions answer 500 with a sanitized body."""
    return handle_exception(request, exc)


@ledgerline_app.get("/health", tags=["Lifecycle"])
async def health() -> Any:
    database = await db_health_check()
    body = {
        "status": "healthy" if database["status"] == "up" else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": database,
    }
    if database["status"] != "up":
        return JSONResponse(status_code=503, content=body)
    return body


ledgerline_app.include_router(billing_webhook_router, prefix="/billing")

Instrumentator().instrument(ledgerline_app).expose(ledgerline_app)

ledgerline_app.add_middleware(RequestIDMiddleware)
