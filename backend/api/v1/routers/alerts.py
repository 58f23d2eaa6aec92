"""
Alerts Router — Guardrail alerts for a channel.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select

from api.deps import get_database, require_internal_token
from db.models import YtAlert
from db.session import Database

router = APIRouter(
    prefix="/api/v1/alerts",
    tags=["alerts"],
    dependencies=[Depends(require_internal_token)],
)


class AlertResponse(BaseModel):
    alert_key: str
    kind: str
    severity: str
    message: str
    details_json: dict | None
    detected_at: datetime
    resolved_at: datetime | None

    model_config = {"from_attributes": True}


@router.get("", response_model=list[AlertResponse])
async def list_alerts(
    tenant_id: str = Query(..., min_length=1),
    channel_id: str = Query(..., min_length=1),
    include_resolved: bool = False,
    db: Database = Depends(get_database),
):
    """Open alerts, newest first. Pass include_resolved to see history."""
    query = select(YtAlert).where(
        YtAlert.tenant_id == tenant_id,
        YtAlert.channel_id == channel_id,
    )
    if not include_resolved:
        query = query.where(YtAlert.resolved_at.is_(None))
    query = query.order_by(YtAlert.detected_at.desc(), YtAlert.alert_key)
    async with db.session() as session:
        result = await session.execute(query)
        return result.scalars().all()
