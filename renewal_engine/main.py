"""
Main Application - FastAPI host for the renewal automation engine.

The lifespan owns the orchestrator: built once at startup, loops started after
the app is ready and stopped before the database engines are disposed.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from renewal_engine.api.routes import router
from renewal_engine.config import settings
from renewal_engine.db.migration_runner import run_migrations
from renewal_engine.db.session import (
    close_engines,
    get_read_session_factory,
    get_write_session_factory,
)
from renewal_engine.observability import get_logger, metrics, setup_logging, setup_tracing
from renewal_engine.observability.tracing import instrument_fastapi
from renewal_engine.services.orchestrator import AutomationOrchestrator

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        automation_enabled=settings.automation_enabled,
        tracing_enabled=settings.tracing_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    # Tests may install their own orchestrator before startup
    orchestrator: AutomationOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = AutomationOrchestrator.from_settings(
            get_write_session_factory(), get_read_session_factory()
        )
        app.state.orchestrator = orchestrator

    if settings.automation_enabled:
        await orchestrator.start_all()

    yield

    logger.info("application_shutting_down")
    await orchestrator.stop_all()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)

# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    endpoint = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")
        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            exc_info=True,
        )
        raise

    duration = time.time() - start_time
    metrics.record_http_request(endpoint, method, response.status_code, duration)
    logger.info(
        "request_completed",
        method=method,
        path=endpoint,
        status_code=response.status_code,
        duration_seconds=duration,
    )
    return response


app.include_router(router)


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
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "renewal_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
