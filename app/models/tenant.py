import uuid
from sqlalchemy import Column, String, TIMESTAMP, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class Agency(Base):
    __tablename__ = "agencies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)

    created_at = Column(TIMESTAMP, server_default=func.now())


class Client(Base):
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)

    # NULL = client sold directly by the platform (no reseller)
    agency_id = Column(UUID(as_uuid=True), ForeignKey("agencies.id"), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
