from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.tenant import get_active_client
from app.models.campaign_condition import CampaignCondition
from app.schemas.condition import CampaignConditionOut
from app.services.condition_evaluator import deactivate_condition
from app.services.tenant_service import get_campaign


router = APIRouter(prefix="/campaigns", tags=["campaign-conditions"])


def _campaign_for_client(db: Session, campaign_id: UUID, client_id: UUID):
    campaign = get_campaign(db, campaign_id)
    if not campaign or campaign.client_id != client_id:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign


@router.get("/{campaign_id}/conditions", response_model=list[CampaignConditionOut])
def list_conditions(
    campaign_id: UUID,
    include_inactive: bool = False,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    _campaign_for_client(db, campaign_id, active_client)
    q = db.query(CampaignCondition).filter(CampaignCondition.campaign_id == campaign_id)
    if not include_inactive:
        q = q.filter(CampaignCondition.is_active.is_(True))
    return q.order_by(CampaignCondition.sequence_order.asc()).all()


@router.post("/{campaign_id}/conditions/{condition_id}/deactivate", response_model=CampaignConditionOut)
def deactivate(
    campaign_id: UUID,
    condition_id: UUID,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    _campaign_for_client(db, campaign_id, active_client)
    condition = db.query(CampaignCondition).filter(CampaignCondition.id == condition_id).first()
    if not condition or condition.campaign_id != campaign_id:
        raise HTTPException(status_code=404, detail="Condition not found")
    return deactivate_condition(db, condition_id)
