"""
Versioned policy parameters and replay evaluation reports.

``params_json`` and ``replay_metrics_json`` are written through schema-
versioned pydantic models so the engine never reads an untyped map.
"""

from datetime import date, datetime
from typing import Literal

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import StorageConflict
from db.models import PolicyEvalReport, PolicyParams
from db.upsert import insert_once, upsert
from decisions.engine import DecisionEngineConfig

logger = structlog.get_logger()

ACTIVE_VERSION = "active"
REPLAY_SCAFFOLD_NOTE = "v1 scaffold: replay gate not implemented yet"


# ─── Schemas ────────────────────────────────────────────────────────────────


class PolicyParamsV1(BaseModel):
    schema_version: Literal[1] = 1
    min_days_with_data: int = Field(default=5, ge=1)
    high_concentration_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    trend_down_threshold_usd: float = -0.01
    top_n_for_new_asset: int = Field(default=3, ge=1)

    def to_engine_config(self) -> DecisionEngineConfig:
        return DecisionEngineConfig(
            min_days_with_data=self.min_days_with_data,
            high_concentration_threshold=self.high_concentration_threshold,
            trend_down_threshold_usd=self.trend_down_threshold_usd,
            top_n_for_new_asset=self.top_n_for_new_asset,
        )


class PolicyEvalReportV1(BaseModel):
    schema_version: Literal[1] = 1
    ok: bool = True
    note: str = REPLAY_SCAFFOLD_NOTE
    candidate_version: str
    run_for_dt: date
    replay: dict | None = None


def candidate_version_for(run_for_dt: date) -> str:
    return f"candidate-{run_for_dt.isoformat()}"


# ─── Persistence ────────────────────────────────────────────────────────────


async def load_params(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    version: str = ACTIVE_VERSION,
) -> PolicyParamsV1 | None:
    """Parsed params for a version; ``None`` when absent or unparseable."""
    result = await session.execute(
        select(PolicyParams.params_json).where(
            PolicyParams.tenant_id == tenant_id,
            PolicyParams.channel_id == channel_id,
            PolicyParams.version == version,
        )
    )
    raw = result.scalar_one_or_none()
    if raw is None:
        return None
    try:
        return PolicyParamsV1.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "policy.params_invalid",
            tenant_id=tenant_id,
            channel_id=channel_id,
            version=version,
            error=str(exc),
        )
        return None


async def upsert_params(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    version: str,
    params: PolicyParamsV1,
    created_by: str = "system",
) -> None:
    now = datetime.utcnow()
    await upsert(
        session,
        PolicyParams,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "version": version,
            "params_json": params.model_dump(mode="json"),
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "channel_id", "version"],
        update_columns=["params_json", "created_by", "updated_at"],
    )


async def ensure_active(session: AsyncSession, tenant_id: str, channel_id: str) -> PolicyParamsV1:
    """Return the active params, seeding defaults when the version is missing."""
    params = await load_params(session, tenant_id, channel_id, ACTIVE_VERSION)
    if params is not None:
        return params

    defaults = PolicyParamsV1()
    now = datetime.utcnow()
    try:
        await insert_once(
            session,
            PolicyParams,
            {
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "version": ACTIVE_VERSION,
                "params_json": defaults.model_dump(mode="json"),
                "created_by": "system",
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "channel_id", "version"],
        )
        logger.info("policy.active_seeded", tenant_id=tenant_id, channel_id=channel_id)
    except StorageConflict:
        existing = await load_params(session, tenant_id, channel_id, ACTIVE_VERSION)
        if existing is not None:
            return existing
        # Present but unparseable: reset to defaults.
        await upsert_params(session, tenant_id, channel_id, ACTIVE_VERSION, defaults)
        logger.info("policy.active_reset", tenant_id=tenant_id, channel_id=channel_id)
    return defaults


async def upsert_eval_report(
    session: AsyncSession,
    tenant_id: str,
    channel_id: str,
    report: PolicyEvalReportV1,
    approved: bool = False,
) -> None:
    now = datetime.utcnow()
    await upsert(
        session,
        PolicyEvalReport,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "candidate_version": report.candidate_version,
            "replay_metrics_json": report.model_dump(mode="json"),
            "approved": approved,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "channel_id", "candidate_version"],
        update_columns=["replay_metrics_json", "approved", "updated_at"],
    )
