"""
ChatRelay API - multi-session chat gateway

FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import observability modules
from chatrelay.config import settings
from chatrelay.database import AsyncSessionLocal, engine
from chatrelay.errors import ChatRelayError, RateLimitExceeded
from chatrelay.logging_config import configure_logging, get_logger
from chatrelay.sentry_config import capture_exception, configure_sentry
from chatrelay.middleware.logging import LoggingMiddleware
from chatrelay.responses import error_response, utc_timestamp
from chatrelay.routes.metrics import router as metrics_router
from chatrelay.runtime import Runtime, build_runtime
from chatrelay.services.rate_limiter import rate_limiter

# Import route modules
from chatrelay.routes.auth import router as auth_router
from chatrelay.routes.sessions import router as sessions_router
from chatrelay.routes.messages import router as messages_router
from chatrelay.routes.chats import router as chats_router
from chatrelay.routes.contacts import router as contacts_router
from chatrelay.routes.groups import router as groups_router
from chatrelay.routes.webhooks import router as webhooks_router
from chatrelay.routes.dashboard import router as dashboard_router
from chatrelay.routes.ws import router as ws_router

# Initialize logging first
configure_logging(logging.DEBUG if settings.DEBUG else logging.INFO)

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime (unless one was injected), restore sessions, tear down on exit."""
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(AsyncSessionLocal)
    runtime: Runtime = app.state.runtime

    restored = await runtime.registry.restore_sessions()
    logger.info("app_started", environment=settings.ENVIRONMENT, restored_sessions=restored)
    try:
        yield
    finally:
        await runtime.shutdown()
        await rate_limiter.close()
        await engine.dispose()
        logger.info("app_stopped")


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        # drop the "body"/"query"/"path" prefix
        loc = [str(part) for part in error.get("loc", ())[1:]]
        details.append({
            "field": ".".join(loc) or str(error.get("loc", [""])[0]),
            "message": error.get("msg", "Invalid value"),
            "value": error.get("input"),
        })
    return details


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatRelayError)
    async def chatrelay_error_handler(request: Request, exc: ChatRelayError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.message, code=exc.code, details=exc.details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder(error_response(
                "Validation failed",
                code="VALIDATION_ERROR",
                details=_validation_details(exc),
            )),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            route=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        capture_exception(exc)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return JSONResponse(
            status_code=500,
            content=error_response(message, code="INTERNAL_ERROR"),
        )


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: Pre-built services (tests inject one with a stub client
            factory); built from settings at startup when omitted
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Multi-session chat gateway with live push and signed webhooks",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    for router in (
        auth_router,
        sessions_router,
        messages_router,
        chats_router,
        contacts_router,
        groups_router,
        webhooks_router,
        dashboard_router,
    ):
        app.include_router(router, prefix="/api")

    app.include_router(ws_router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health(request: Request):
        """Liveness plus a count of live sessions."""
        runtime: Runtime | None = request.app.state.runtime
        return {
            "status": "healthy",
            "sessions": len(runtime.registry) if runtime else 0,
            "timestamp": utc_timestamp(),
        }

    return app


app = create_app()
