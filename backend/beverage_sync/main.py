"""FastAPI control surface for the beverage receipts pipeline."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from beverage_sync import __version__
from beverage_sync.config import get_settings
from beverage_sync.database import check_store_ready, close_store, get_store, init_store
from beverage_sync.limiter import limiter
from beverage_sync.routers import admin_router, health_router
from beverage_sync.tasks.scheduler import setup_scheduler, shutdown_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting beverage-sync API...")

    store = get_store()
    if not settings.store_path.exists():
        logger.info(f"No store at {settings.store_path}; creating schema")
        await init_store(store)
    try:
        await check_store_ready(store)
        logger.info("Store ready")
    except Exception as e:
        logger.error(f"Store not ready: {e}")
        raise

    setup_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    await close_store()
    logger.info("beverage-sync API shut down")


# Create FastAPI app
app = FastAPI(
    title="beverage-sync API",
    description="Trigger and monitor Texas mixed beverage receipt ingestion",
    version=__version__,
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(admin_router, prefix=settings.api_v1_prefix)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "beverage-sync API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "beverage_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
