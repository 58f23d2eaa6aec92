"""
Video platform integration package.

Collaborator interfaces live in ``integrations.base``; the YouTube
implementations (OAuth refresh, Analytics reports, DB-backed token store and
channel registry) live in ``integrations.youtube``.

Usage:
    from integrations.youtube import YouTubeAnalyticsClient, ConnectionTokenProvider

    metrics = YouTubeAnalyticsClient(base_url=settings.youtube_analytics_base_url)
    rows = await metrics.fetch_daily_metrics(token, channel_id, start_dt, end_dt)
"""

from integrations.base import (
    ChannelCredentials,
    ChannelRegistry,
    ChannelTarget,
    MetricsProvider,
    TokenProvider,
    VideoDailyMetricRow,
)

__all__ = [
    "ChannelCredentials",
    "ChannelRegistry",
    "ChannelTarget",
    "MetricsProvider",
    "TokenProvider",
    "VideoDailyMetricRow",
]
