from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from uuid import UUID

from pydantic import BaseModel


class RewardPoolCreate(BaseModel):
    name: str
    brand: str
    denomination: Decimal

    cost_per_unit: Optional[Decimal] = None
    low_stock_threshold: int = 0
    active: bool = True

    codes: List[str] = []


class RewardPoolOut(BaseModel):
    id: UUID
    client_id: UUID
    name: str
    brand: str
    denomination: Decimal

    available_count: int
    total_count: int
    claimed_count: int
    delivered_count: int

    cost_per_unit: Optional[Decimal] = None
    low_stock_threshold: int
    active: bool

    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RewardUnitsAdd(BaseModel):
    codes: List[str]


class RewardUnitOut(BaseModel):
    id: UUID
    pool_id: UUID
    status: str

    recipient_id: Optional[UUID] = None
    campaign_id: Optional[UUID] = None
    condition_id: Optional[UUID] = None

    claimed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StrandedUnitOut(BaseModel):
    unit: RewardUnitOut
    delivery_record_id: UUID
    failure_reason: Optional[str] = None
    retry_count: int


class RewardUnitRelease(BaseModel):
    reason: Optional[str] = None
