"""
Realtime voice relay between wrist devices and the OpenAI Realtime API.

Two client transports share one session core:
- WS /realtime: full-duplex WebSocket
- GET /stream + POST /upload, /commit, /end: SSE download with chunked upload
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import Settings
from core.container import container
from core.dependencies import get_registry, get_settings
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import realtime, realtime_stream
from services.realtime.registry import SessionRegistry

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    set_startup_time()
    config = container.settings()
    registry = container.session_registry()
    logger.info("Starting realtime relay",
                model=config.openai_realtime_model,
                provider_configured=bool(config.openai_api_key))
    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY not set, every conversation will fail to connect")

    yield

    # Shutdown
    logger.info("Shutting down realtime relay", active_sessions=registry.active_count)
    await registry.shutdown()
    container.session_registry.reset()
    logger.info("Relay shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Wrist Realtime Relay",
    version="1.0.0",
    description="Realtime voice relay for wrist devices",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    """Turn unhandled errors into a bare 500; details stay in the log."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error"}
            )


# Add exception handler middleware BEFORE CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
# Origins are fixed when the app is built
logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(realtime.router)
app.include_router(realtime_stream.router)


@app.get("/health")
async def health_check(
    registry: SessionRegistry = Depends(get_registry),
    config: Settings = Depends(get_settings),
):
    """Relay health: uptime, provider configuration and live sessions."""
    return get_health_status(registry, config)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting realtime relay",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log"] if settings.debug else None,
        workers=1 if settings.debug else settings.workers
    )
