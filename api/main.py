"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, stats, canary
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from discovery.scheduler import DiscoveryScheduler

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Registry Discovery API",
    description="Operational view of the registry discovery pipeline and package canary",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = DiscoveryScheduler() if settings.SCHEDULER_ENABLED else None


app.include_router(health.router)
app.include_router(stats.router)
app.include_router(canary.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Registry Discovery API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if scheduler is not None:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Registry Discovery API")
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Registry Discovery API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "stats": "/stats",
            "canary": "/canary"
        }
    }
