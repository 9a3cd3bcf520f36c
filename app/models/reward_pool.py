import uuid
from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class RewardPool(Base):
    __tablename__ = "reward_pools"

    __table_args__ = (
        CheckConstraint("available_count >= 0", name="ck_reward_pools_available_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)

    name = Column(String(100), nullable=False)

    brand = Column(String(100), nullable=False)          # ex: Amazon, Starbucks
    denomination = Column(Numeric(10, 2), nullable=False)  # card face value

    # counters are only mutated by the inventory allocator
    available_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)
    claimed_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)

    cost_per_unit = Column(Numeric(10, 2), nullable=True)
    low_stock_threshold = Column(Integer, nullable=False, default=0)

    active = Column(Boolean, default=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
