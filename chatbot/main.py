"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from chatbot.api.auth_routes import router as auth_router
from chatbot.api.chat_routes import router as chat_router
from chatbot.api.payment_routes import router as payment_router
from chatbot.api.status_routes import router as status_router
from chatbot.config import settings
from chatbot.db.migration_runner import run_migrations
from chatbot.db.session import Database
from chatbot.exceptions import ChatbotError, OTPCooldownError
from chatbot.models.api import ErrorResponse
from chatbot.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from chatbot.observability.metrics import render_metrics
from chatbot.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from chatbot.services.checkout import StripeCheckoutProvider
from chatbot.services.mailer import SMTPMailer
from chatbot.services.memory import MemoryService
from chatbot.services.model_gateway import OpenRouterGateway

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the database and every integration once, and closes them on
    shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        model_gateway_configured=settings.model_gateway_configured,
        memory_configured=settings.memory_configured,
        mail_configured=settings.mail_configured,
    )

    database = Database.from_settings(settings)
    instrument_sqlalchemy(database.engine)
    if settings.database_url.startswith("sqlite"):
        await database.create_all()
        logger.info("sqlite_schema_created")
    elif settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations, settings.database_url)

    app.state.database = database
    app.state.model_gateway = OpenRouterGateway.from_settings(settings)
    app.state.memory = MemoryService.from_settings(settings)
    app.state.checkout_provider = StripeCheckoutProvider(
        settings.stripe_api_key, settings.stripe_webhook_secret
    )
    app.state.mailer = SMTPMailer(settings)

    yield

    logger.info("application_shutting_down")
    await app.state.model_gateway.close()
    await app.state.memory.close()
    await database.dispose()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(ChatbotError)
async def chatbot_error_handler(request: Request, exc: ChatbotError) -> JSONResponse:
    """Map domain errors to the uniform error envelope."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    headers = None
    if isinstance(exc, OTPCooldownError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=exc.message).model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log validation errors and return them without the offending input."""
    sanitized_errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": str(error.get("msg", "")),
        }
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            message="Invalid request", errors=sanitized_errors
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(message="Internal server error").model_dump(exclude_none=True),
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and a request id."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    endpoint = request.url.path
    method = request.method

    metrics.http_requests_in_progress.inc()
    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers["X-Request-ID"] = request_id
    return response


# Register routes
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(payment_router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics in the text exposition format."""
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(content=render_metrics(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatbot.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
