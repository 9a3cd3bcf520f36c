import uuid
from sqlalchemy import Column, String, TIMESTAMP, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    category = Column(String(30), nullable=False)     # gift_card | communication | campaign | system
    event_type = Column(String(50), nullable=False)   # ex: channel_resolved, sms_sent, delivery_retry

    status = Column(String(20), nullable=False, default="success")
    # success | failed | pending

    severity = Column(String(20), nullable=False, default="info")
    # info | warning | error | critical

    recipient_id = Column(UUID(as_uuid=True), nullable=True)
    campaign_id = Column(UUID(as_uuid=True), nullable=True)
    delivery_record_id = Column(UUID(as_uuid=True), nullable=True)

    details = Column(JSON)

    created_at = Column(TIMESTAMP, server_default=func.now())
