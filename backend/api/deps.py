"""
ChannelPilot API Dependencies

Dependency injection for the database handle, the worker loop and the
internal bearer token.
"""

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import Settings, get_settings
from core.errors import ConfigError
from db.session import Database
from workers.tick import Worker, build_worker

security = HTTPBearer(auto_error=False)


def get_database(request: Request) -> Database:
    """Database handle owned by the application lifespan."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise ConfigError("database is not initialised")
    return db


def get_worker(
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> Worker:
    return build_worker(db, settings)


async def require_internal_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the internal bearer token. Bypassed in debug mode when no token is set."""
    expected = settings.internal_api_token
    if not expected:
        if settings.debug:
            return
        raise ConfigError("INTERNAL_API_TOKEN is not configured")

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
