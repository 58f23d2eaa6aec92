"""
YouTube Integration Clients

OAuth token refresh, Analytics daily reports, and the DB-backed token
store / channel registry built on ``channel_connections``.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta

import httpx
import structlog
from sqlalchemy import select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import AuthError, TaskError, UpstreamError
from db.models import CHANNEL_TOTAL_VIDEO_ID, ChannelConnection
from db.session import Database
from integrations.base import (
    ChannelCredentials,
    ChannelRegistry,
    ChannelTarget,
    MetricsProvider,
    TokenProvider,
    VideoDailyMetricRow,
)

logger = structlog.get_logger()

OAUTH_PROVIDER = "youtube"
REQUEST_TIMEOUT_SECS = 30.0

REVENUE_METRICS = "estimatedRevenue,views"
VIEWS_METRICS = "views"
IMPRESSION_METRICS = "videoThumbnailImpressions,videoThumbnailImpressionsClickRate"

_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code == 200:
        return
    body = response.text
    if response.status_code == 401:
        raise AuthError(body or "unauthorized")
    raise UpstreamError(response.status_code, f"{body} (url: {response.request.url})")


def _is_query_unsupported(exc: UpstreamError) -> bool:
    return exc.status_code == 400 and any(
        marker in exc.message
        for marker in ("The query is not supported", "Unknown identifier", "Unknown metric", "Unknown dimension")
    )


def should_fallback_to_views_only(exc: UpstreamError) -> bool:
    """403 (no monetary scope) or a 400 unsupported query; never a 401."""
    if isinstance(exc, AuthError):
        return False
    return exc.status_code == 403 or _is_query_unsupported(exc)


# ─── OAuth ──────────────────────────────────────────────────────────────────


class YouTubeOAuthClient:
    """Refresh-token exchange against Google's OAuth token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport

    @_transient
    async def refresh(self, refresh_token: str, now: datetime | None = None) -> ChannelCredentials:
        async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT_SECS) as client:
            response = await client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        if response.status_code in (400, 401):
            # invalid_grant: the refresh token itself is revoked or expired
            raise AuthError(f"token refresh rejected: {response.text}")
        _raise_for_status(response)

        payload = response.json()
        now = now or datetime.utcnow()
        expires_in = payload.get("expires_in")
        return ChannelCredentials(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
        )


# ─── Analytics ──────────────────────────────────────────────────────────────


def parse_report_rows(payload: dict, channel_total: bool = False) -> list[VideoDailyMetricRow]:
    """Map an Analytics ``reports`` response onto metric rows by column header."""
    index: dict[str, int] = {}
    for i, header in enumerate(payload.get("columnHeaders") or []):
        name = header.get("name", "")
        if name in ("impressions", "videoThumbnailImpressions"):
            name = "impressions"
        elif name == "videoThumbnailImpressionsClickRate":
            name = "impressions_ctr"
        index[name] = i

    if "day" not in index or (not channel_total and "video" not in index):
        return []

    def _cell(row, key, cast, default=None):
        pos = index.get(key)
        if pos is None or pos >= len(row) or row[pos] is None:
            return default
        try:
            return cast(row[pos])
        except (TypeError, ValueError):
            return default

    rows: list[VideoDailyMetricRow] = []
    for row in payload.get("rows") or []:
        try:
            dt = date.fromisoformat(str(row[index["day"]]))
        except (ValueError, IndexError):
            continue
        video_id = CHANNEL_TOTAL_VIDEO_ID if channel_total else _cell(row, "video", str, "")
        if not video_id:
            continue
        rows.append(
            VideoDailyMetricRow(
                dt=dt,
                video_id=video_id,
                revenue_usd=_cell(row, "estimatedRevenue", float, 0.0),
                impressions=int(_cell(row, "impressions", float, 0)),
                impressions_ctr=_cell(row, "impressions_ctr", float),
                views=int(_cell(row, "views", float, 0)),
                is_channel_total=channel_total,
            )
        )
    return rows


def channel_totals_from_video_rows(rows: list[VideoDailyMetricRow]) -> list[VideoDailyMetricRow]:
    """Sum per-video rows into one channel-total row per day (CTR impression-weighted)."""
    by_day: dict[date, dict] = defaultdict(lambda: {"rev": 0.0, "impr": 0, "views": 0, "ctr_sum": 0.0, "ctr_w": 0})
    for row in rows:
        if row.is_channel_total:
            continue
        acc = by_day[row.dt]
        acc["rev"] += row.revenue_usd
        acc["impr"] += row.impressions
        acc["views"] += row.views
        if row.impressions_ctr is not None and row.impressions > 0:
            acc["ctr_sum"] += row.impressions_ctr * row.impressions
            acc["ctr_w"] += row.impressions

    return [
        VideoDailyMetricRow(
            dt=dt,
            video_id=CHANNEL_TOTAL_VIDEO_ID,
            revenue_usd=acc["rev"],
            impressions=acc["impr"],
            impressions_ctr=acc["ctr_sum"] / acc["ctr_w"] if acc["ctr_w"] else None,
            views=acc["views"],
            is_channel_total=True,
        )
        for dt, acc in sorted(by_day.items())
    ]


def merge_impressions(rows: list[VideoDailyMetricRow], impression_rows: list[VideoDailyMetricRow]) -> None:
    """Fold an impressions report into ``rows`` in place, keyed by (dt, video_id).

    Impression rows with no revenue/views counterpart are appended as-is.
    """
    index = {(row.dt, row.video_id): row for row in rows}
    for extra in impression_rows:
        target = index.get((extra.dt, extra.video_id))
        if target is None:
            rows.append(extra)
            index[(extra.dt, extra.video_id)] = extra
            continue
        target.impressions = extra.impressions
        if extra.impressions_ctr is not None:
            target.impressions_ctr = extra.impressions_ctr
        if target.views == 0:
            target.views = extra.views


class YouTubeAnalyticsClient(MetricsProvider):
    """Client for the YouTube Analytics v2 ``reports`` endpoint.

    Per window the client asks for:
      1. revenue + views by day/video, retried as views-only on 403 or an
         unsupported query (or when the revenue report comes back empty)
      2. thumbnail impressions by day/video, best-effort
      3. the same pair by day for channel totals, falling back to summed
         video rows when the channel report is unavailable
    """

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @_transient
    async def _report(self, access_token: str, params: dict) -> dict:
        async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT_SECS) as client:
            response = await client.get(
                f"{self.base_url}/reports",
                params=params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        _raise_for_status(response)
        return response.json()

    async def _revenue_or_views(
        self,
        access_token: str,
        channel_id: str,
        params: dict,
        channel_total: bool = False,
    ) -> list[VideoDailyMetricRow]:
        """Revenue + views, or views alone when revenue is refused or empty.

        A refused views-only query yields no rows for the per-video report and
        re-raises for the channel report so the caller can sum video rows.
        """
        try:
            payload = await self._report(access_token, {**params, "metrics": REVENUE_METRICS})
            rows = parse_report_rows(payload, channel_total=channel_total)
        except UpstreamError as exc:
            if not should_fallback_to_views_only(exc):
                raise
            logger.warning(
                "youtube.views_only_fallback",
                channel_id=channel_id,
                dimensions=params["dimensions"],
                status_code=exc.status_code,
            )
            rows = []
        if rows:
            return rows

        try:
            payload = await self._report(access_token, {**params, "metrics": VIEWS_METRICS})
        except UpstreamError as exc:
            if channel_total or not should_fallback_to_views_only(exc):
                raise
            logger.warning("youtube.views_only_refused", channel_id=channel_id, status_code=exc.status_code)
            return []
        return parse_report_rows(payload, channel_total=channel_total)

    async def _impressions(
        self,
        access_token: str,
        channel_id: str,
        params: dict,
        channel_total: bool = False,
    ) -> list[VideoDailyMetricRow]:
        try:
            payload = await self._report(access_token, {**params, "metrics": IMPRESSION_METRICS})
        except UpstreamError as exc:
            if isinstance(exc, AuthError):
                raise
            logger.info(
                "youtube.impressions_unavailable",
                channel_id=channel_id,
                dimensions=params["dimensions"],
                status_code=exc.status_code,
            )
            return []
        return parse_report_rows(payload, channel_total=channel_total)

    async def fetch_daily_metrics(
        self,
        access_token: str,
        channel_id: str,
        start_dt: date,
        end_dt: date,
    ) -> list[VideoDailyMetricRow]:
        base_params = {
            "ids": "channel==MINE",
            "startDate": start_dt.isoformat(),
            "endDate": end_dt.isoformat(),
            "sort": "day",
            "maxResults": 200,
        }
        video_params = {**base_params, "dimensions": "day,video"}
        channel_params = {**base_params, "dimensions": "day"}

        video_rows = await self._revenue_or_views(access_token, channel_id, video_params)
        if video_rows:
            merge_impressions(video_rows, await self._impressions(access_token, channel_id, video_params))

        try:
            total_rows = await self._revenue_or_views(access_token, channel_id, channel_params, channel_total=True)
        except UpstreamError as exc:
            if not should_fallback_to_views_only(exc):
                raise
            logger.warning(
                "youtube.channel_report_fallback",
                channel_id=channel_id,
                status_code=exc.status_code,
            )
            total_rows = []
        if total_rows:
            merge_impressions(
                total_rows, await self._impressions(access_token, channel_id, channel_params, channel_total=True)
            )
        else:
            total_rows = channel_totals_from_video_rows(video_rows)

        logger.info(
            "youtube.metrics_fetched",
            channel_id=channel_id,
            start_dt=start_dt.isoformat(),
            end_dt=end_dt.isoformat(),
            video_rows=len(video_rows),
            total_rows=len(total_rows),
        )
        return video_rows + total_rows


# ─── DB-backed collaborators ────────────────────────────────────────────────


class ConnectionTokenProvider(TokenProvider):
    """Reads tokens from ``channel_connections`` and persists refreshed ones."""

    def __init__(self, db: Database, oauth: YouTubeOAuthClient):
        self.db = db
        self.oauth = oauth

    async def _connection(self, session, tenant_id: str, channel_id: str) -> ChannelConnection | None:
        result = await session.execute(
            select(ChannelConnection)
            .where(
                ChannelConnection.tenant_id == tenant_id,
                ChannelConnection.oauth_provider == OAUTH_PROVIDER,
                ChannelConnection.channel_id == channel_id,
            )
            .order_by(ChannelConnection.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_credentials(self, tenant_id: str, channel_id: str) -> ChannelCredentials:
        async with self.db.session() as session:
            conn = await self._connection(session, tenant_id, channel_id)
        if conn is None or not conn.access_token:
            raise TaskError(f"missing youtube channel connection: tenant_id={tenant_id} channel_id={channel_id}")
        return ChannelCredentials(
            access_token=conn.access_token,
            refresh_token=conn.refresh_token,
            expires_at=conn.expires_at,
        )

    async def refresh(self, tenant_id: str, channel_id: str, refresh_token: str) -> ChannelCredentials:
        creds = await self.oauth.refresh(refresh_token)
        async with self.db.session() as session:
            conn = await self._connection(session, tenant_id, channel_id)
            if conn is not None:
                conn.access_token = creds.access_token
                conn.refresh_token = creds.refresh_token
                conn.expires_at = creds.expires_at
                conn.updated_at = datetime.utcnow()
                await session.commit()
        logger.info("youtube.token_refreshed", tenant_id=tenant_id, channel_id=channel_id)
        return creds


class ConnectionChannelRegistry(ChannelRegistry):
    """Every YouTube connection with a non-empty channel id is eligible."""

    def __init__(self, db: Database):
        self.db = db

    async def list_channels(self, job_type: str) -> list[ChannelTarget]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ChannelConnection.tenant_id, ChannelConnection.channel_id)
                .where(
                    ChannelConnection.oauth_provider == OAUTH_PROVIDER,
                    ChannelConnection.channel_id.is_not(None),
                    ChannelConnection.channel_id != "",
                )
                .distinct()
                .order_by(ChannelConnection.tenant_id, ChannelConnection.channel_id)
            )
            return [ChannelTarget(tenant_id=row.tenant_id, channel_id=row.channel_id) for row in result.all()]
