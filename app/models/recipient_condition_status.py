import uuid
from sqlalchemy import Column, String, TIMESTAMP, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class RecipientConditionStatus(Base):
    __tablename__ = "recipient_condition_status"

    __table_args__ = (
        UniqueConstraint("recipient_id", "condition_id", name="uq_recipient_condition_status_recipient_condition"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id"), nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    condition_id = Column(UUID(as_uuid=True), ForeignKey("campaign_conditions.id"), nullable=False)

    status = Column(String(20), nullable=False, default="pending")
    # pending | completed  (completed is final)

    completed_at = Column(TIMESTAMP, nullable=True)

    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
