import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class DeliveryRecord(Base):
    __tablename__ = "delivery_records"

    __table_args__ = (
        # one fulfillment per (recipient, condition)
        UniqueConstraint("recipient_id", "condition_id", name="uq_delivery_records_recipient_condition"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id"), nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    condition_id = Column(UUID(as_uuid=True), ForeignKey("campaign_conditions.id"), nullable=False)

    reward_unit_id = Column(UUID(as_uuid=True), ForeignKey("reward_units.id"), nullable=True)

    channel = Column(String(10), nullable=False, default="sms")
    destination = Column(String(255), nullable=True)

    account_level = Column(String(20), nullable=True)
    account_id = Column(UUID(as_uuid=True), nullable=True)

    stage = Column(String(20), nullable=False, default="evaluated")
    # evaluated | allocating | allocated | resolving | resolved | sending | sent | failed

    delivery_status = Column(String(20), nullable=False, default="pending")
    # pending | sent | failed

    retryable = Column(Boolean, nullable=False, default=True)
    failure_reason = Column(String(2000), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(TIMESTAMP, nullable=True)
    last_attempt_at = Column(TIMESTAMP, nullable=True)

    provider_message_id = Column(String(255), nullable=True)
    message_body = Column(String(2000), nullable=True)

    sent_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
