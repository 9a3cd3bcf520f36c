import uuid
from sqlalchemy import Boolean, Column, Index, Integer, String, TIMESTAMP, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class MessagingAccount(Base):
    __tablename__ = "messaging_accounts"

    __table_args__ = (
        UniqueConstraint("level", "entity_id", "channel", name="uq_messaging_accounts_level_entity_channel"),
        # NULL entity ids never collide in the constraint above: one platform account per channel
        Index(
            "uq_messaging_accounts_platform_channel",
            "level",
            "channel",
            unique=True,
            postgresql_where=text("entity_id IS NULL"),
            sqlite_where=text("entity_id IS NULL"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    level = Column(String(20), nullable=False)
    # client | agency | platform

    # client id / agency id; NULL for the platform account
    entity_id = Column(UUID(as_uuid=True), nullable=True)

    channel = Column(String(10), nullable=False, default="sms")
    # sms | email

    friendly_name = Column(String(100))

    credentials_ref = Column(String(255), nullable=True)  # vault reference, never the secret
    from_address = Column(String(255), nullable=True)      # sender phone / email

    enabled = Column(Boolean, nullable=False, default=False)
    validated = Column(Boolean, nullable=False, default=False)
    last_validated_at = Column(TIMESTAMP, nullable=True)

    last_error = Column(String(2000), nullable=True)
    last_error_at = Column(TIMESTAMP, nullable=True)

    # consecutive failures; reset on success
    failure_count = Column(Integer, nullable=False, default=0)
    circuit_open_until = Column(TIMESTAMP, nullable=True)

    monthly_usage_limit = Column(Integer, nullable=True)  # NULL = unlimited
    current_month_usage = Column(Integer, nullable=False, default=0)
    usage_month = Column(String(7), nullable=True)        # YYYY-MM the usage counter belongs to

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    @property
    def configured(self) -> bool:
        return bool(self.credentials_ref and self.from_address)
