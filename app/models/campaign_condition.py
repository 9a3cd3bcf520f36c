import uuid
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


CONDITION_TYPES = {
    "form_submitted",
    "opt_in_confirmed",
    "call_disposition",
    "call_completed",
    "qr_scanned",
    "purl_visited",
    "mail_delivered",
}

TRIGGER_ACTIONS = {
    "send_sms_reward",
    "send_email_reward",
    "log_only",
}


class CampaignCondition(Base):
    __tablename__ = "campaign_conditions"

    __table_args__ = (
        UniqueConstraint("campaign_id", "sequence_order", name="uq_campaign_conditions_campaign_sequence"),
        CheckConstraint("sequence_order >= 1", name="ck_campaign_conditions_sequence_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)

    name = Column(String(100))

    sequence_order = Column(Integer, nullable=False)

    condition_type = Column(String(50), nullable=False)
    trigger_action = Column(String(50), nullable=False, default="log_only")

    is_required = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # required for send_*_reward actions
    reward_pool_id = Column(UUID(as_uuid=True), ForeignKey("reward_pools.id"), nullable=True)

    # NULL = fall back to the configured / system default template
    message_template = Column(String(1000), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
