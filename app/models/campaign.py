import uuid
from sqlalchemy import Column, String, TIMESTAMP, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # tenant owning the campaign; drives the messaging fallback chain
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)

    name = Column(String(100), nullable=False)

    status = Column(String(20), nullable=False, default="draft")
    # draft | active | paused | completed

    created_at = Column(TIMESTAMP, server_default=func.now())
