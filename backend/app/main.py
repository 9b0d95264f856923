"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import access_log_middleware, register_exception_handlers, setup_cors_middleware
from app.db.session import init_db

# Import routers
from app.api import oauth, posting, session

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if settings.RATE_LIMIT_BACKEND == "redis":
        from app.db.redis import ping
        logger.info("Testing Redis connection...")
        if not ping():
            raise RuntimeError("Redis is required for RATE_LIMIT_BACKEND=redis but is unreachable")
        logger.info("Redis connection successful")

    # Start background tasks
    from app.tasks.rate_limit_sweeper import rate_limit_sweeper_task

    logger.info("Starting rate limit sweeper...")
    sweeper = asyncio.create_task(rate_limit_sweeper_task())
    logger.info("Rate limit sweeper started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass


# Create FastAPI app
app = FastAPI(
    title="AdPilot Connections",
    description="Social platform connections, sessions and rate-limited posting",
    version="1.0.0",
    lifespan=lifespan
)

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)
register_exception_handlers(app)

# Include routers
app.include_router(oauth.router)
app.include_router(session.router)
app.include_router(posting.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
