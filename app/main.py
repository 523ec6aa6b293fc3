"""
CRM chat assistant API with database pool and provider client lifecycle.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.dependencies import build_services
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.routes import chat, crm, health

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        await db_pool.initialize()
    except Exception as e:
        logger.error("Failed to initialize database pool", error=str(e))
        raise

    app.state.services = build_services()
    logger.info("All services initialized successfully")

    yield

    logger.info("Application shutting down")
    shutdown_errors = []

    # provider HTTP clients first, then the pool they may still write through
    try:
        await app.state.services.close()
    except Exception as e:
        logger.error("Error closing provider clients", error=str(e))
        shutdown_errors.append(f"Clients: {e}")

    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="CRM Chat Assistant",
    description="Chat about HubSpot and Salesforce contacts with @mentions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(chat.router)
app.include_router(crm.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response
