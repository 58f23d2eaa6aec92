"""
ChannelPilot API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.errors import ConfigError
from core.logging import configure_logging
from db.session import Database

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging(settings)
    app.state.db = Database.from_settings(settings)
    logger.info("api.startup", version=settings.app_version)
    yield
    await app.state.db.dispose()
    app.state.db = None
    logger.info("api.shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Daily channel decisions, outcomes and revenue guardrails",
    lifespan=lifespan,
)


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    logger.error("api.config_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Import and register routers
from api.v1.routers import alerts, decisions, jobs

app.include_router(jobs.router)
app.include_router(decisions.router)
app.include_router(alerts.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
