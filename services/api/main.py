"""FastAPI job control service for the catalog crawler."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import get_settings
from .routes import jobs, health
from database.manager import DatabaseManager
from utils.logger import setup_logger


# Get settings
settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize database connection pool
    - Shutdown: Close database connections gracefully

    Args:
        app: FastAPI application instance
    """
    setup_logger(level=settings.log_level, log_file=settings.log_file)
    logger.info("Starting up...")
    logger.info(f"CORS Origins: {settings.cors_origins}")

    app.state.db = DatabaseManager(settings.database_url)
    await app.state.db.init_pool(
        min_size=settings.db_min_pool_size, max_size=settings.db_max_pool_size
    )
    logger.info("Database pool initialized")

    yield

    logger.info("Shutting down...")
    await app.state.db.close()
    logger.info("Database pool closed")


# Create FastAPI application
app = FastAPI(
    title="Catalog Crawler API",
    version="1.0.0",
    description="""
    Control surface for provider crawl jobs.

    Features:
    - Job creation, listing and per-status stats
    - Cancel, pause, resume, retry and delete
    - Recent page attempts per job
    - Health monitoring

    Jobs are executed by separate crawl worker processes that claim them
    through leases in the same PostgreSQL database.
    """,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(
    jobs.router,
    prefix="/api/jobs",
    tags=["jobs"]
)
app.include_router(
    health.router,
    prefix="/api",
    tags=["health"]
)


@app.get("/")
def root():
    """Basic service information."""
    return {
        "status": "ok",
        "service": "catalog-crawler-api",
        "version": "1.0.0",
        "docs": "/api/docs"
    }


@app.get("/api")
def api_root():
    """
    API root endpoint.

    Returns available API endpoints and documentation links.
    """
    return {
        "message": "Catalog Crawler API",
        "version": "1.0.0",
        "endpoints": {
            "jobs": "/api/jobs",
            "stats": "/api/jobs/stats",
            "health": "/api/health",
            "docs": "/api/docs",
            "redoc": "/api/redoc"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
