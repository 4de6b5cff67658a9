from contextlib import asynccontextmanager
import logging
from datetime import datetime
from fastapi import FastAPI, Depends
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.database import init_db
from app.api import config, translations, sync, bulk, stats, metadata, health, webhooks
from app.core.api_rate_limiter import limiter, rate_limit_exceeded_handler
from app.core.auth import verify_credentials
from app.core.bulk_sync import bulk_runner
from app.core.sync_scheduler import scheduler


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events for the application."""
    # Startup
    await init_db()

    try:
        await scheduler.start()
    except Exception as e:
        logging.error(f"Failed to start sync scheduler: {e}", exc_info=True)

    yield

    # Shutdown
    await bulk_runner.shutdown()
    await scheduler.stop()


app = FastAPI(
    title=settings.app_title,
    description=settings.app_description,
    version="0.1.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Include API routers
app.include_router(config.router)
app.include_router(translations.router)
app.include_router(sync.router)
app.include_router(bulk.router)
app.include_router(stats.router)
app.include_router(metadata.router)
app.include_router(health.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health_legacy():
    """
    Legacy health check endpoint for backward compatibility.

    For detailed health checks, use /api/health instead.
    For quick checks suitable for load balancers, use /api/health/quick.
    """
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


@app.get("/api/about")
async def about(_: str = Depends(verify_credentials)):
    """Return application version and project information."""
    return {
        "name": settings.app_title,
        "version": app.version,
        "description": settings.app_description,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
