"""FastAPI application entrypoint for the Chapter Download Orchestrator API."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import chapters, downloads, follows, health
from core.config import get_settings
from db.session import async_session_maker, create_db_and_tables
from services.container import ServiceContainer
from services.job_recovery import requeue_interrupted_jobs

# Configure logging to show INFO level and above
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

# Also configure uvicorn's logger to avoid duplicates
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager for startup/shutdown events."""
    # Startup
    logger.info("Starting Chapter Download Orchestrator API...")
    config = get_settings()
    config.ensure_directories()
    await create_db_and_tables()

    requeued = await requeue_interrupted_jobs()
    if requeued:
        logger.info("Requeued %d job(s) interrupted by the previous shutdown", requeued)

    services = ServiceContainer(async_session_maker, config)
    app.state.services = services
    await services.start()

    logger.info("API startup complete")
    yield

    # Shutdown - graceful cleanup
    logger.info("Initiating graceful shutdown...")
    try:
        await services.shutdown(timeout=25.0)  # Leave 5s buffer for docker
    except Exception as e:
        logger.warning("Error during service shutdown: %s", e)

    logger.info("Graceful shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_settings()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="REST API for queueing chapter downloads and tracking followed titles",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(downloads.router, prefix="/downloads", tags=["Downloads"])
    app.include_router(follows.router, prefix="/follows", tags=["Follows"])
    app.include_router(chapters.router, prefix="/chapters", tags=["Chapters"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        workers=config.workers if not config.debug else 1,
    )
