"""FastAPI application factory."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from clipforge.api.routes import generations, progress, queue, webhooks
from clipforge.core import metrics
from clipforge.core.config import Settings, configure_logging
from clipforge.core.container import ServiceContainer, build_services
from clipforge.core.database import create_tables
from clipforge.services.admission import new_trace_id
from clipforge.services.exceptions import RateLimitedError, ServiceError

logger = structlog.get_logger()


def create_resilient_worker(coro_func, worker_name: str, shutdown_event: asyncio.Event):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Zero-argument coroutine function running the worker loop
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func())
    task.add_done_callback(on_worker_done)
    return task


def _install_services(app: FastAPI, services: ServiceContainer) -> None:
    app.state.services = services
    app.state.session_factory = services.session_factory
    app.state.uow_factory = services.uow_factory


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: build the service graph, create tables, start the progress
      gateway and (unless RUN_WORKERS is off) the in-process worker pool
    - Shutdown: stop the pool, let in-flight jobs finish, close connections
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        _install_services(app, build_services(settings))
    services: ServiceContainer = app.state.services

    await create_tables(services.engine)
    await services.gateway.start()

    shutdown_event = asyncio.Event()
    pool = None
    worker_task = None
    if settings.run_workers:
        pool = services.build_worker_pool()
        worker_task = create_resilient_worker(pool.run, "video_generation", shutdown_event)

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        run_workers=settings.run_workers,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if pool is not None and worker_task is not None:
        pool.stop()
        await asyncio.gather(worker_task, return_exceptions=True)

    await services.gateway.stop()
    if owns_services:
        await services.aclose()


def _error_body(request: Request, error: str, details=None) -> dict:
    return {
        "error": error,
        "details": details,
        "trace_id": getattr(request.state, "trace_id", None),
    }


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(
                "request.service_error",
                error=exc.message,
                error_type=type(exc).__name__,
                path=request.url.path,
            )
        else:
            logger.info(
                "request.rejected",
                error=exc.message,
                error_type=type(exc).__name__,
                status_code=exc.status_code,
            )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        details = exc.details if exc.details is not None else exc.message
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.title, details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(request, "Validation error", errors),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )


def create_app(
    settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Application settings (read from the environment if omitted)
        services: Prebuilt service graph; tests pass one wired to fakes

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (services.settings if services else Settings())  # type: ignore[call-arg]

    app = FastAPI(
        title="Clipforge API",
        description="Asynchronous video generation pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        _install_services(app, services)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or new_trace_id()
        request.state.trace_id = trace_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(trace_id=trace_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.REQUEST_COUNT.labels(
            method=request.method, endpoint=endpoint, status_code=response.status_code
        ).inc()
        metrics.REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(elapsed)
        response.headers["X-Trace-Id"] = trace_id
        return response

    register_exception_handlers(app)

    app.include_router(generations.router)  # prefix="/api/generations" in definition
    app.include_router(queue.router)  # prefix="/api/queue" in definition
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(progress.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database and Redis connectivity tests.

        Returns:
            200: {"status": "healthy", "checks": {...}} if both succeed
            503: {"status": "unhealthy", "checks": {...}} if either fails
        """
        checks: dict[str, str] = {}
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            checks["database"] = "ok"
        except Exception as e:
            logger.error("health_check.database_failed", error=str(e), error_type=type(e).__name__)
            checks["database"] = f"error: {type(e).__name__}"

        try:
            await app.state.services.redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            logger.error("health_check.redis_failed", error=str(e), error_type=type(e).__name__)
            checks["redis"] = f"error: {type(e).__name__}"

        if all(v == "ok" for v in checks.values()):
            return {"status": "healthy", "checks": checks}

        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "checks": checks}

    @app.get("/metrics")
    async def prometheus_metrics():
        body, content_type = metrics.render_latest()
        return Response(content=body, media_type=content_type)

    return app


# Create app instance for uvicorn
app = create_app()
