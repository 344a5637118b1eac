"""
ContentFlow - multi-brand content pipeline and publishing engine.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("contentflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _worker_specs(settings) -> dict:
    """name -> (enabled, module, entry function)."""
    return {
        "task_processor": (settings.worker_task_processor, "src.workers.task_processor", "run_task_processor"),
        "pipeline_sweeper": (settings.worker_pipeline_sweeper, "src.workers.pipeline_sweeper", "run_pipeline_sweeper"),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("ContentFlow starting up (env=%s)", settings.app_env)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - connector credentials cannot be decrypted. "
            "Generate a Fernet key for production."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []
    enabled, disabled = [], []
    for name, (flag, module_path, func_name) in _worker_specs(settings).items():
        if flag:
            import importlib
            mod = importlib.import_module(module_path)
            worker_tasks.append(asyncio.create_task(getattr(mod, func_name)()))
            enabled.append(name)
        else:
            disabled.append(name)

    if enabled:
        logger.info("Workers started: %s", ", ".join(enabled))
    if disabled:
        logger.info("Workers disabled (toggle via env): %s", ", ".join(disabled))

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("ContentFlow shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from src.database import dispose_engine
    from src.utils.cache import close_redis
    await dispose_engine()
    await close_redis()
    logger.info("ContentFlow shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="ContentFlow",
        description="Multi-brand content pipeline and publishing engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Correlation ID middleware
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
