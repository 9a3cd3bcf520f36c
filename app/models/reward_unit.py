import uuid
from sqlalchemy import Column, String, TIMESTAMP, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class RewardUnit(Base):
    __tablename__ = "reward_units"

    __table_args__ = (
        # one card per recipient per condition; a binding is never reassigned
        UniqueConstraint("recipient_id", "condition_id", name="uq_reward_units_recipient_condition"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    pool_id = Column(UUID(as_uuid=True), ForeignKey("reward_pools.id"), nullable=False, index=True)

    code = Column(String(100), nullable=False)

    status = Column(String(20), nullable=False, default="available")
    # available | claimed | delivered | returned

    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id"), nullable=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=True)
    condition_id = Column(UUID(as_uuid=True), ForeignKey("campaign_conditions.id"), nullable=True)

    claimed_at = Column(TIMESTAMP, nullable=True)
    delivered_at = Column(TIMESTAMP, nullable=True)
    returned_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
