from datetime import datetime
from typing import Optional

from uuid import UUID

from pydantic import BaseModel


class DeliveryRecordOut(BaseModel):
    id: UUID
    recipient_id: UUID
    campaign_id: UUID
    condition_id: UUID
    reward_unit_id: Optional[UUID] = None

    channel: str
    destination: Optional[str] = None
    account_level: Optional[str] = None

    stage: str
    delivery_status: str
    retryable: bool
    failure_reason: Optional[str] = None

    retry_count: int
    last_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RetrySweepRequest(BaseModel):
    batch_size: Optional[int] = None
    max_retries: Optional[int] = None
    include_stalled: bool = True
