from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import config
from app.db import get_db
from app.deps.tenant import get_active_client
from app.models.campaign import Campaign
from app.models.delivery_record import DeliveryRecord
from app.schemas.delivery import DeliveryRecordOut
from app.services.delivery_retry_scheduler import list_exhausted_deliveries


router = APIRouter(prefix="/deliveries", tags=["deliveries"])


@router.get("", response_model=list[DeliveryRecordOut])
def list_deliveries(
    campaign_id: UUID | None = None,
    recipient_id: UUID | None = None,
    status: Literal["pending", "sent", "failed"] | None = None,
    limit: int = 100,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    q = (
        db.query(DeliveryRecord)
        .join(Campaign, Campaign.id == DeliveryRecord.campaign_id)
        .filter(Campaign.client_id == active_client)
    )
    if campaign_id:
        q = q.filter(DeliveryRecord.campaign_id == campaign_id)
    if recipient_id:
        q = q.filter(DeliveryRecord.recipient_id == recipient_id)
    if status:
        q = q.filter(DeliveryRecord.delivery_status == status)
    return q.order_by(DeliveryRecord.created_at.desc()).limit(min(max(limit, 1), 500)).all()


@router.get("/exhausted", response_model=list[DeliveryRecordOut])
def list_exhausted(
    campaign_id: UUID | None = None,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    return list_exhausted_deliveries(
        db,
        max_retries=config.DELIVERY_MAX_RETRIES,
        client_id=active_client,
        campaign_id=campaign_id,
        limit=500,
    )
