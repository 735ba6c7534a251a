"""
FastAPI backend for the MindDump request orchestration layer.

Thought analysis, spreadsheet logging and webhook delivery run through
bounded queues, caches and batchers wired by the dependency injection container.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import set_startup_time
from core.logging import configure_logging, get_logger
from routers import performance, thoughts

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

# Upper bound on how long shutdown waits for pending sheet writes
SHUTDOWN_FLUSH_TIMEOUT = 30.0


def _caches():
    return [container.analysis_cache(), container.sheets_cache(), container.webhook_cache()]


def _queues():
    return [container.analysis_queue(), container.sheets_queue(), container.webhook_queue()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting MindDump orchestration services")
    set_startup_time()

    for cache in _caches():
        await cache.start()
    for queue in _queues():
        await queue.start()

    if not settings.sheets_configured:
        logger.warning("Google Sheets not configured, master sheet logging disabled")
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set, thought analysis unavailable")

    logger.info("Services started successfully",
                webhooks=sorted(settings.webhook_urls))
    yield

    # Shutdown: flush batched writes while the queues still run
    try:
        await asyncio.wait_for(container.sheets_service().stop(), SHUTDOWN_FLUSH_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Timed out flushing pending sheet writes")
    await container.webhook_service().flush(timeout=SHUTDOWN_FLUSH_TIMEOUT)

    for queue in _queues():
        await queue.stop()
    for cache in _caches():
        await cache.stop()
    await container.http_client().aclose()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="MindDump Orchestration Services",
    version="2.0.0",
    description="Queued, cached and batched access to analysis, spreadsheet and webhook collaborators",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


# Exception middleware BEFORE CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Performance-Score", "X-System-Health"],
)

# Include routers
app.include_router(performance.router)
app.include_router(thoughts.router)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting MindDump orchestration services",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        workers=1 if settings.debug else settings.workers
    )
