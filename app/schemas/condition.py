from datetime import datetime
from typing import Any, Dict, List, Optional

from uuid import UUID

from pydantic import BaseModel


class ConditionEvent(BaseModel):
    recipient_id: UUID
    campaign_id: UUID
    event_type: str

    metadata: Optional[Dict[str, Any]] = None


class ConditionEvaluationOut(BaseModel):
    outcome: str
    matched: bool
    newlyCompleted: bool
    conditionId: Optional[str] = None
    sequenceOrder: Optional[int] = None
    triggerAction: Optional[str] = None
    configErrors: List[Dict[str, Any]] = []
    cascaded: List[Dict[str, Any]] = []
    fulfillment: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class CampaignConditionOut(BaseModel):
    id: UUID
    campaign_id: UUID
    name: Optional[str] = None
    sequence_order: int

    condition_type: str
    trigger_action: str

    is_required: bool
    is_active: bool

    reward_pool_id: Optional[UUID] = None
    message_template: Optional[str] = None

    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
