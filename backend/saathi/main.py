import asyncio
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.errors import RateLimitExceededError, SaathiError
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.store import close_store, initialize_store
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .models.responses import ErrorEnvelope
from .routes import admin, feedback, health, metrics, opportunities, query, schemes
from .services.cache.response_cache import get_response_cache
from .services.schemes import get_scheme_store
from .services.session import get_session_store

settings = get_settings()

# JSON output in production (containerized), console output in development
configure_logging(log_level=settings.log_level, service_name=settings.service_name, json_output=settings.log_json)

logger = get_logger(__name__)

configure_tracing(service_name=settings.service_name)

app = FastAPI(
    title="Saathi Query & Opportunity API",
    description="Scheme, scholarship and job guidance with eligibility matching",
    version="1.0.0",
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

instrument_fastapi(app)

_reclaim_task: Optional[asyncio.Task] = None


async def _reclaim_sessions_periodically(interval_seconds: int) -> None:
    session_store = get_session_store()
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await session_store.reclaim_idle()
        except Exception as e:
            logger.error("session_reclaim_failed", error=str(e), error_type=type(e).__name__, exc_info=True)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    global _reclaim_task
    logger.info("app_startup_started")

    store = await initialize_store(settings.redis_url)
    if store.backend == "memory":
        logger.warning(
            "app_startup_store_not_shared",
            message="Sessions, cache and rate limits are local to this instance.",
        )

    scheme_store = get_scheme_store()
    scheme_store.add_listener(get_response_cache().invalidate_by_scheme)
    logger.info("app_startup_schemes_ready", scheme_count=len(scheme_store))

    _reclaim_task = asyncio.create_task(
        _reclaim_sessions_periodically(settings.session_reclaim_interval_seconds)
    )
    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    if _reclaim_task is not None:
        _reclaim_task.cancel()
    shutdown_tracing()
    await close_store()
    logger.info("app_shutdown_completed")


def _envelope_response(status_code: int, code: str, message: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorEnvelope(code=code, message=message).to_wire(),
    )
    trace_id = get_trace_id() or get_trace_id_from_context()
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(SaathiError)
async def saathi_error_handler(request: Request, exc: SaathiError):
    """Render typed errors as the {code, message} envelope."""
    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, exc.code)
    logger.warning(
        "request_error",
        error_code=exc.code,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )
    response = _envelope_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimitExceededError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(part) for part in err["loc"][1:]) for err in exc.errors() if len(err["loc"]) > 1})
    logger.warning(
        "request_validation_failed",
        path=request.url.path,
        fields=fields,
    )
    message = "Some details in your request are missing or not valid"
    if fields:
        message = f"{message}: {', '.join(fields)}."
    return _envelope_response(400, "INVALID_REQUEST", message)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    record_exception(exc)
    set_span_status(StatusCode.ERROR, type(exc).__name__)

    logger.error(
        "unhandled_exception",
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _envelope_response(500, SaathiError.code, SaathiError.default_message)


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(query.router, prefix="/api/v1", tags=["Query"])
app.include_router(opportunities.router, prefix="/api/v1", tags=["Opportunities"])
app.include_router(schemes.router, prefix="/api/v1", tags=["Schemes"])
app.include_router(feedback.router, prefix="/api/v1", tags=["Feedback"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
