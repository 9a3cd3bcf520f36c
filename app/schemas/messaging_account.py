from datetime import datetime
from typing import Literal, Optional

from uuid import UUID

from pydantic import BaseModel


class MessagingAccountUpsert(BaseModel):
    level: Literal["client", "agency", "platform"]
    # client / agency id; omitted for the platform level
    entity_id: Optional[UUID] = None
    channel: Literal["sms", "email"] = "sms"

    friendly_name: Optional[str] = None
    credentials_ref: Optional[str] = None
    from_address: Optional[str] = None

    enabled: bool = True
    validated: Optional[bool] = None
    monthly_usage_limit: Optional[int] = None


class MessagingAccountOut(BaseModel):
    id: UUID
    level: str
    entity_id: Optional[UUID] = None
    channel: str

    friendly_name: Optional[str] = None
    from_address: Optional[str] = None
    configured: bool

    enabled: bool
    validated: bool
    last_validated_at: Optional[datetime] = None

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    failure_count: int
    circuit_open_until: Optional[datetime] = None

    monthly_usage_limit: Optional[int] = None
    current_month_usage: int
    usage_month: Optional[str] = None

    class Config:
        from_attributes = True


class MessagingAccountInvalidate(BaseModel):
    error: Optional[str] = None
