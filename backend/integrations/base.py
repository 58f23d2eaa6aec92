"""
Channel Integration Interfaces

The worker loop, dispatcher and guardrail evaluator talk to the video
platform only through these three collaborators, so tests can swap in
fakes and a future provider can plug in without touching the pipeline.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime

# ── Value types ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChannelTarget:
    tenant_id: str
    channel_id: str


@dataclass
class ChannelCredentials:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class VideoDailyMetricRow:
    """One day of metrics for one video, or the channel total when flagged."""

    dt: date
    video_id: str
    revenue_usd: float = 0.0
    impressions: int = 0
    impressions_ctr: float | None = None
    views: int = 0
    is_channel_total: bool = False


# ── Collaborators ─────────────────────────────────────────────────────────


class TokenProvider(ABC):
    """Loads and refreshes OAuth credentials for a connected channel."""

    @abstractmethod
    async def get_active_credentials(self, tenant_id: str, channel_id: str) -> ChannelCredentials:
        ...

    @abstractmethod
    async def refresh(self, tenant_id: str, channel_id: str, refresh_token: str) -> ChannelCredentials:
        """Exchange the refresh token and persist the new credentials."""
        ...


class MetricsProvider(ABC):
    """Daily per-video metrics. Errors raise ``AuthError`` (401) or ``UpstreamError``."""

    @abstractmethod
    async def fetch_daily_metrics(
        self,
        access_token: str,
        channel_id: str,
        start_dt: date,
        end_dt: date,
    ) -> list[VideoDailyMetricRow]:
        ...


class ChannelRegistry(ABC):
    """Enumerates (tenant, channel) pairs eligible for scheduled work."""

    @abstractmethod
    async def list_channels(self, job_type: str) -> list[ChannelTarget]:
        ...
