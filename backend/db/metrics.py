"""
Channel metric reads and writes shared by the daily job and the outcome step.
"""

from datetime import date, datetime

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ObservedAction, VideoDailyMetric
from db.upsert import upsert
from integrations.base import VideoDailyMetricRow


async def upsert_metric_rows(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    rows: list[VideoDailyMetricRow],
) -> int:
    """Upsert fetched rows. Impressions are only overwritten by a positive value."""
    now = datetime.utcnow()
    for row in rows:
        await upsert(
            session,
            VideoDailyMetric,
            {
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "dt": row.dt,
                "video_id": row.video_id,
                "is_channel_total": row.is_channel_total,
                "revenue_usd": row.revenue_usd,
                "impressions": row.impressions,
                "impressions_ctr": row.impressions_ctr,
                "views": row.views,
                "updated_at": now,
            },
            index_elements=["tenant_id", "channel_id", "dt", "video_id"],
            update_columns=["is_channel_total", "revenue_usd", "impressions_ctr", "views", "updated_at"],
            set_={
                "impressions": lambda stmt: case(
                    (stmt.excluded.impressions > 0, stmt.excluded.impressions),
                    else_=VideoDailyMetric.impressions,
                ),
            },
        )
    return len(rows)


async def load_metric_rows(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    start_dt: date,
    end_dt: date,
    include_channel_total: bool = False,
) -> list[VideoDailyMetricRow]:
    stmt = select(VideoDailyMetric).where(
        VideoDailyMetric.tenant_id == tenant_id,
        VideoDailyMetric.channel_id == channel_id,
        VideoDailyMetric.dt >= start_dt,
        VideoDailyMetric.dt <= end_dt,
    )
    if not include_channel_total:
        stmt = stmt.where(VideoDailyMetric.is_channel_total.is_(False))
    result = await session.execute(stmt.order_by(VideoDailyMetric.dt, VideoDailyMetric.video_id))
    return [
        VideoDailyMetricRow(
            dt=m.dt,
            video_id=m.video_id,
            revenue_usd=float(m.revenue_usd or 0.0),
            impressions=int(m.impressions or 0),
            impressions_ctr=m.impressions_ctr,
            views=int(m.views or 0),
            is_channel_total=bool(m.is_channel_total),
        )
        for m in result.scalars().all()
    ]


async def new_video_counts_by_dt(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    start_dt: date,
    end_dt: date,
) -> list[tuple[date, int]]:
    """Videos whose first-ever metric day falls inside the window, counted per day."""
    first_seen = (
        select(
            VideoDailyMetric.video_id,
            func.min(VideoDailyMetric.dt).label("first_dt"),
        )
        .where(
            VideoDailyMetric.tenant_id == tenant_id,
            VideoDailyMetric.channel_id == channel_id,
            VideoDailyMetric.is_channel_total.is_(False),
        )
        .group_by(VideoDailyMetric.video_id)
        .subquery()
    )
    result = await session.execute(
        select(first_seen.c.first_dt, func.count())
        .where(first_seen.c.first_dt >= start_dt, first_seen.c.first_dt <= end_dt)
        .group_by(first_seen.c.first_dt)
        .order_by(first_seen.c.first_dt)
    )
    return [(dt, int(n)) for dt, n in result.all()]


async def upsert_observed_action(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    dt: date,
    action_type: str,
    meta: dict,
) -> None:
    now = datetime.utcnow()
    await upsert(
        session,
        ObservedAction,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "dt": dt,
            "action_type": action_type,
            "meta": meta,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "channel_id", "dt", "action_type"],
        update_columns=["meta", "updated_at"],
    )
