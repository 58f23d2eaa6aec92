"""
Test Configuration — Fixtures for the async DB, fake providers and the API client.

Each test gets its own SQLite file under ``tmp_path`` so concurrent
sessions (claim races, API + worker) see the same committed state.
"""

from datetime import date, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from core.config import Settings, get_settings
from core.errors import AuthError
from db.models import ChannelConnection, VideoDailyMetric
from db.session import Database
from integrations.base import (
    ChannelCredentials,
    ChannelRegistry,
    ChannelTarget,
    MetricsProvider,
    TokenProvider,
    VideoDailyMetricRow,
)

TENANT_ID = "tenant-a"
CHANNEL_ID = "UC_channel_a"
NOW = datetime(2026, 3, 15, 12, 0, 0)
TODAY = NOW.date()


@pytest.fixture
async def db(tmp_path):
    """Fresh schema on a per-test SQLite file."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_all()
    yield database
    await database.dispose()


# ── Fakes ──────────────────────────────────────────────────────────────────


class FakeRegistry(ChannelRegistry):
    def __init__(self, targets: list[ChannelTarget]):
        self.targets = targets
        self.calls: list[str] = []

    async def list_channels(self, job_type: str) -> list[ChannelTarget]:
        self.calls.append(job_type)
        return list(self.targets)


class FakeTokens(TokenProvider):
    def __init__(self, creds: ChannelCredentials | None = None, refreshed: ChannelCredentials | None = None):
        self.creds = creds or ChannelCredentials(access_token="token-1", refresh_token="refresh-1")
        self.refreshed = refreshed or ChannelCredentials(access_token="token-2", refresh_token="refresh-1")
        self.refresh_calls: list[tuple[str, str, str]] = []

    async def get_active_credentials(self, tenant_id: str, channel_id: str) -> ChannelCredentials:
        return self.creds

    async def refresh(self, tenant_id: str, channel_id: str, refresh_token: str) -> ChannelCredentials:
        self.refresh_calls.append((tenant_id, channel_id, refresh_token))
        self.creds = self.refreshed
        return self.refreshed


class FakeMetrics(MetricsProvider):
    """Serves fixed rows; raises ``AuthError`` for tokens listed in ``reject_tokens``."""

    def __init__(self, rows: list[VideoDailyMetricRow] | None = None, error: Exception | None = None):
        self.rows = rows or []
        self.error = error
        self.reject_tokens: set[str] = set()
        self.calls: list[tuple[str, str, date, date]] = []

    async def fetch_daily_metrics(self, access_token, channel_id, start_dt, end_dt):
        self.calls.append((access_token, channel_id, start_dt, end_dt))
        if access_token in self.reject_tokens:
            raise AuthError("token expired")
        if self.error is not None:
            raise self.error
        return [r for r in self.rows if start_dt <= r.dt <= end_dt]


def video_rows(
    start_dt: date,
    days: int,
    revenue_by_video: dict[str, float],
    views: int = 100,
) -> list[VideoDailyMetricRow]:
    """Flat per-video revenue for ``days`` consecutive days."""
    rows = []
    for offset in range(days):
        dt = start_dt + timedelta(days=offset)
        for video_id, revenue in revenue_by_video.items():
            rows.append(VideoDailyMetricRow(dt=dt, video_id=video_id, revenue_usd=revenue, views=views))
    return rows


async def seed_metrics(db: Database, rows: list[VideoDailyMetricRow], tenant_id=TENANT_ID, channel_id=CHANNEL_ID):
    async with db.session() as session:
        session.add_all(
            [
                VideoDailyMetric(
                    tenant_id=tenant_id,
                    channel_id=channel_id,
                    dt=r.dt,
                    video_id=r.video_id,
                    is_channel_total=r.is_channel_total,
                    revenue_usd=r.revenue_usd,
                    impressions=r.impressions,
                    impressions_ctr=r.impressions_ctr,
                    views=r.views,
                )
                for r in rows
            ]
        )
        await session.commit()


async def seed_connection(
    db: Database,
    tenant_id=TENANT_ID,
    channel_id=CHANNEL_ID,
    access_token="token-1",
    refresh_token="refresh-1",
    expires_at=None,
):
    async with db.session() as session:
        session.add(
            ChannelConnection(
                tenant_id=tenant_id,
                oauth_provider="youtube",
                channel_id=channel_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        )
        await session.commit()


# ── API ────────────────────────────────────────────────────────────────────


@pytest.fixture
def api_settings():
    return Settings(
        app_env="test",
        debug=False,
        internal_api_token="test-internal-token",
        worker_id="api-test-worker",
        youtube_client_id="client-id",
        youtube_client_secret="client-secret",
        log_format="console",
    )


@pytest.fixture
async def client(db, api_settings):
    """Async test client with the database and settings overridden."""
    from api.deps import get_database
    from api.main import app

    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_settings] = lambda: api_settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": "Bearer test-internal-token"},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
