"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from catalog_mirror.config import settings
from catalog_mirror.db.session import engine
from catalog_mirror.db.models import Base
from catalog_mirror.worker.scheduler import setup_scheduler
from catalog_mirror.worker.tasks import task_runner
from catalog_mirror.api.routes import orders, products, sync

# Configure structured logging
from catalog_mirror.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting catalog mirror...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Start scheduler
    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Catalog Mirror",
    description="Mirror an upstream product catalog and take orders against local stock",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(products.router)
app.include_router(orders.router)
app.include_router(sync.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "catalog_mirror.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
