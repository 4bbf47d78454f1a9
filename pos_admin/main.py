"""POS admin sync service main module."""
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from pos_admin.api.routes import router as dashboard_router
from pos_admin.context import SyncContext
from pos_admin.core_settings import get_settings
from shared.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging

SERVICE_VERSION = "1.0.0"

logger = get_logger(__name__)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        return response


def create_app(ctx: Optional[SyncContext] = None) -> FastAPI:
    settings = ctx.settings if ctx is not None else get_settings()
    setup_logging(settings.SERVICE_NAME, settings.LOG_LEVEL)

    app = FastAPI(title="POS Admin Sync", version=SERVICE_VERSION)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.state.sync_context = ctx

    def current_engine():
        current = app.state.sync_context
        return current.engine if current is not None else None

    def upstream_mode():
        current = app.state.sync_context
        return current.connectivity.status()["mode"] if current is not None else None

    health = ServiceHealth(
        settings.SERVICE_NAME,
        engine_provider=current_engine,
        upstream_mode=upstream_mode,
        version=SERVICE_VERSION,
    )
    app.include_router(health.create_health_router())
    app.include_router(dashboard_router)

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting POS admin sync service...")
        if app.state.sync_context is None:
            app.state.sync_context = SyncContext(settings)
        await app.state.sync_context.open()

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.sync_context is not None:
            await app.state.sync_context.close()

    return app


app = create_app()
