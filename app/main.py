# app/main.py
"""
FastAPI application with database pool lifecycle management and mail
scheduler auto-start.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware import SchedulerAutoStartMiddleware
from app.repositories.mail_job_repository import mail_job_repository
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()

        logger.info("Ensuring mail job schema")
        await mail_job_repository.ensure_schema()

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        await db_pool.close()
        raise

    yield

    logger.info("Application shutting down")

    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))


app = FastAPI(
    title="Account Portal",
    description="Account management backend with asynchronous mail dispatch",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)

app.add_middleware(SchedulerAutoStartMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
