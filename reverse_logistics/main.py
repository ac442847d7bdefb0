# ==== REVERSE LOGISTICS MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the reverse-logistics workflow engine.

Wires middleware, observability, routers and the domain error handlers.
The deadline monitor normally runs as a Prefect flow; with
``SLA_MONITOR_IN_PROCESS`` it runs inside the API process instead.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from reverse_logistics.business.errors import RateLimitedError, ReverseLogisticsError
from reverse_logistics.integrations.http_clients import close_collaborators, get_collaborators
from reverse_logistics.middleware.actor import ActorMiddleware
from reverse_logistics.middleware.correlation import CorrelationMiddleware, get_correlation_id
from reverse_logistics.observability.logging import get_logger, init_logging
from reverse_logistics.observability.metrics import init_metrics, metrics_router
from reverse_logistics.observability.tracing import init_tracing
from reverse_logistics.routes import health, ndr, returns, rto
from reverse_logistics.routes.dependencies import get_rto_engine
from reverse_logistics.schemas.common import ErrorResponse
from reverse_logistics.services.sla_monitor import DeadlineMonitor
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import close_database, create_tables, init_database
from reverse_logistics.storage.redis import close_redis_client


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup and shutdown: logging, tracing, database, optional monitor loop.
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR if settings.LOG_TO_FILE else None)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    if settings.DATABASE_URL.startswith("sqlite"):
        await create_tables()

    stop_event = asyncio.Event()
    monitor_task = None
    if settings.SLA_MONITOR_IN_PROCESS:
        monitor = DeadlineMonitor(get_collaborators(), rto_engine=get_rto_engine())
        monitor_task = asyncio.create_task(monitor.run(stop_event))

    yield

    # --► SHUTDOWN SEQUENCE
    if monitor_task is not None:
        stop_event.set()
        await monitor_task
    await close_collaborators()
    await close_redis_client()
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title="Reverse Logistics Workflow Engine",
        description="NDR resolution, RTO handling and customer returns with SLA deadline monitoring",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None,
    )

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # Last added runs first: correlation wraps actor validation, CORS wraps both
    app.add_middleware(ActorMiddleware, require_actor=True)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id", "Retry-After"],
    )

    # --► ROUTER REGISTRATION
    _register_routers(app)

    # --► EXCEPTION HANDLERS
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


# Documented error answers of the domain routers
ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 401, 403, 404, 409, 422, 429, 502)}


def _register_routers(app: FastAPI) -> None:
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(health.router, prefix="", tags=["health"])
    app.include_router(returns.router, prefix="/returns", tags=["returns"], responses=ERROR_RESPONSES)
    app.include_router(rto.router, prefix="/rto", tags=["rto"], responses=ERROR_RESPONSES)
    app.include_router(ndr.router, prefix="/ndr", tags=["ndr"], responses=ERROR_RESPONSES)


# ==== EXCEPTION HANDLERS ==== #


def _error_body(request: Request, error: str, message: str, code: str, details: dict) -> dict:
    return ErrorResponse(
        error=error,
        message=message,
        code=code,
        details=details,
        correlation_id=get_correlation_id(request),
    ).model_dump(mode="json")


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Map domain errors to their HTTP status with a consistent error body.
    """
    @app.exception_handler(ReverseLogisticsError)
    async def domain_error_handler(request: Request, exc: ReverseLogisticsError) -> JSONResponse:
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(max(1, round(exc.retry_after)))

        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, code=exc.code, error=exc.message)

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, type(exc).__name__, exc.message, exc.code, exc.details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=_error_body(request, "Validation error", "Request validation failed", "VALIDATION_ERROR", {"fields": fields}),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=_error_body(request, "Internal server error", "An unexpected error occurred", "INTERNAL_ERROR", {}),
        )


# ==== APPLICATION INSTANCE ==== #


# Create application instance for deployment
app = create_app()
