"""
Decisions Router — Today's recommendation for a channel.
"""

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_database, require_internal_token
from db.session import Database
from decisions.queries import get_decision

router = APIRouter(
    prefix="/api/v1/decisions",
    tags=["decisions"],
    dependencies=[Depends(require_internal_token)],
)


class DecisionResponse(BaseModel):
    as_of_dt: date
    direction: str
    confidence: float
    evidence: list[str]
    forbidden: list[str]
    reevaluate: list[str]

    model_config = {"from_attributes": True}


@router.get("/today", response_model=DecisionResponse)
async def get_today_decision(
    tenant_id: str = Query(..., min_length=1),
    channel_id: str = Query(..., min_length=1),
    as_of_dt: date | None = None,
    db: Database = Depends(get_database),
):
    """Stored decision for the day, or the PROTECT stub when nothing has synced."""
    as_of_dt = as_of_dt or datetime.utcnow().date()
    async with db.session() as session:
        decision = await get_decision(session, tenant_id, channel_id, as_of_dt)
    return DecisionResponse(
        as_of_dt=decision.as_of_dt,
        direction=decision.direction.value,
        confidence=decision.confidence,
        evidence=decision.evidence,
        forbidden=decision.forbidden,
        reevaluate=decision.reevaluate,
    )
