"""
Decision persistence and lookup.

``get_decision`` never fails for a missing row: channels that have not
synced yet get a fixed PROTECT stub.
"""

from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DecisionDaily, DecisionOutcome
from db.upsert import upsert
from decisions.engine import INSUFFICIENT_FORBIDDEN, INSUFFICIENT_REEVALUATE, Decision, Direction
from decisions.outcome import OutcomeLabel
from decisions.replay_gate import ReplayDecision, ReplayOutcome

NO_DATA_EVIDENCE = ["MVP stub: no channel data synced yet"]


def default_decision(as_of_dt: date) -> Decision:
    return Decision(
        as_of_dt=as_of_dt,
        direction=Direction.PROTECT,
        confidence=0.6,
        evidence=list(NO_DATA_EVIDENCE),
        forbidden=list(INSUFFICIENT_FORBIDDEN),
        reevaluate=list(INSUFFICIENT_REEVALUATE),
    )


async def get_decision(session: AsyncSession, tenant_id: str, channel_id: str, as_of_dt: date) -> Decision:
    result = await session.execute(
        select(DecisionDaily).where(
            DecisionDaily.tenant_id == tenant_id,
            DecisionDaily.channel_id == channel_id,
            DecisionDaily.as_of_dt == as_of_dt,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return default_decision(as_of_dt)
    return Decision(
        as_of_dt=row.as_of_dt,
        direction=Direction(row.direction),
        confidence=float(row.confidence),
        evidence=list(row.evidence or []),
        forbidden=list(row.forbidden or []),
        reevaluate=list(row.reevaluate or []),
    )


async def decision_exists(session: AsyncSession, tenant_id: str, channel_id: str, as_of_dt: date) -> bool:
    result = await session.execute(
        select(DecisionDaily.id).where(
            DecisionDaily.tenant_id == tenant_id,
            DecisionDaily.channel_id == channel_id,
            DecisionDaily.as_of_dt == as_of_dt,
        )
    )
    return result.first() is not None


async def upsert_decision(session: AsyncSession, tenant_id: str, channel_id: str, decision: Decision) -> None:
    now = datetime.utcnow()
    await upsert(
        session,
        DecisionDaily,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "as_of_dt": decision.as_of_dt,
            "direction": decision.direction.value,
            "confidence": decision.confidence,
            "evidence": decision.evidence,
            "forbidden": decision.forbidden,
            "reevaluate": decision.reevaluate,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "channel_id", "as_of_dt"],
        update_columns=["direction", "confidence", "evidence", "forbidden", "reevaluate", "updated_at"],
    )


async def upsert_outcome(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    decision_dt: date,
    outcome_dt: date,
    label: OutcomeLabel,
    notes: dict,
) -> None:
    now = datetime.utcnow()
    await upsert(
        session,
        DecisionOutcome,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "decision_dt": decision_dt,
            "outcome_dt": outcome_dt,
            "revenue_change_pct_7d": label.revenue_change_pct_7d,
            "catastrophic_flag": label.catastrophic_flag,
            "new_top_asset_flag": label.new_top_asset_flag,
            "notes": notes,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "channel_id", "decision_dt", "outcome_dt"],
        update_columns=[
            "revenue_change_pct_7d",
            "catastrophic_flag",
            "new_top_asset_flag",
            "notes",
            "updated_at",
        ],
    )


async def load_replay_history(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    start_dt: date,
    end_dt: date,
) -> tuple[list[ReplayDecision], dict[date, ReplayOutcome]]:
    """Decisions in ``[start_dt, end_dt]`` (date order) and their outcomes by decision date."""
    decisions = await session.execute(
        select(DecisionDaily.as_of_dt, DecisionDaily.direction)
        .where(
            DecisionDaily.tenant_id == tenant_id,
            DecisionDaily.channel_id == channel_id,
            DecisionDaily.as_of_dt >= start_dt,
            DecisionDaily.as_of_dt <= end_dt,
        )
        .order_by(DecisionDaily.as_of_dt)
    )
    history = [ReplayDecision(as_of_dt=row.as_of_dt, direction=row.direction) for row in decisions.all()]

    outcomes = await session.execute(
        select(DecisionOutcome.decision_dt, DecisionOutcome.catastrophic_flag)
        .where(
            DecisionOutcome.tenant_id == tenant_id,
            DecisionOutcome.channel_id == channel_id,
            DecisionOutcome.decision_dt >= start_dt,
            DecisionOutcome.decision_dt <= end_dt,
        )
        .order_by(DecisionOutcome.decision_dt, DecisionOutcome.outcome_dt)
    )
    by_dt: dict[date, ReplayOutcome] = {}
    for row in outcomes.all():
        by_dt[row.decision_dt] = ReplayOutcome(decision_dt=row.decision_dt, catastrophic_flag=bool(row.catastrophic_flag))
    return history, by_dt
