# tests/conftest.py

import os
import tempfile
import uuid
from datetime import datetime
from decimal import Decimal

# The engine is built at import time: point it at a throwaway SQLite file first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="reward-fulfillment-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TEST_DB_DIR, "test.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app import config
from app.db import Base, engine, get_db
from app.main import app
from app.models.campaign import Campaign
from app.models.campaign_condition import CampaignCondition
from app.models.messaging_account import MessagingAccount
from app.models.recipient import Recipient
from app.models.reward_pool import RewardPool
from app.models.reward_unit import RewardUnit
from app.models.tenant import Agency, Client
from app.services.messaging_gateway import SendResult


NOW = datetime(2026, 10, 1, 12, 0, 0)

TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    monkeypatch.setattr(config, "MESSAGING_GATEWAY_URL", None)
    monkeypatch.setattr(config, "LEGACY_MESSAGING_CREDENTIALS_REF", None)
    monkeypatch.setattr(config, "LEGACY_MESSAGING_FROM_ADDRESS", None)
    monkeypatch.setattr(config, "REWARD_SMS_TEMPLATE", None)
    monkeypatch.setattr(config, "REWARD_EMAIL_TEMPLATE", None)
    monkeypatch.setattr(config, "CIRCUIT_BREAKER_THRESHOLD", 5)
    monkeypatch.setattr(config, "CIRCUIT_BREAKER_COOLDOWN_SECONDS", 1800)
    monkeypatch.setattr(config, "DELIVERY_MAX_RETRIES", 3)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.rollback()
    session.close()


class FakeSender:
    """Stands in for the messaging gateway; succeeds unless told otherwise."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def __call__(self, account, destination, body, channel="sms"):
        self.calls.append({"account": account, "destination": destination, "body": body, "channel": channel})
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, provider_message_id=f"msg-{len(self.calls)}")


@pytest.fixture
def sender():
    return FakeSender()


class Seeder:
    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def agency(self, name="Acme Agency"):
        return self._save(Agency(id=uuid.uuid4(), name=name))

    def client(self, name="Sunrise Dental", agency=None):
        return self._save(Client(id=uuid.uuid4(), name=name, agency_id=agency.id if agency else None))

    def campaign(self, client, name="Spring mailer"):
        return self._save(Campaign(id=uuid.uuid4(), client_id=client.id, name=name, status="active"))

    def recipient(self, campaign, first_name="Dana", phone="+15550001111", email="dana@example.com"):
        return self._save(
            Recipient(
                id=uuid.uuid4(),
                campaign_id=campaign.id,
                first_name=first_name,
                last_name="Rivera",
                phone=phone,
                email=email,
            )
        )

    def pool(self, client, codes=("CODE-1",), brand="Amazon", denomination="25.00", low_stock_threshold=0, active=True):
        pool = RewardPool(
            id=uuid.uuid4(),
            client_id=client.id,
            name=f"{brand} {denomination}",
            brand=brand,
            denomination=Decimal(denomination),
            available_count=len(codes),
            total_count=len(codes),
            claimed_count=0,
            delivered_count=0,
            low_stock_threshold=low_stock_threshold,
            active=active,
        )
        self.db.add(pool)
        for code in codes:
            self.db.add(RewardUnit(id=uuid.uuid4(), pool_id=pool.id, code=code, status="available"))
        self.db.commit()
        return pool

    def condition(
        self,
        campaign,
        sequence_order,
        condition_type,
        trigger_action="send_sms_reward",
        pool=None,
        is_required=True,
        is_active=True,
        message_template=None,
    ):
        return self._save(
            CampaignCondition(
                id=uuid.uuid4(),
                campaign_id=campaign.id,
                name=f"step {sequence_order}",
                sequence_order=sequence_order,
                condition_type=condition_type,
                trigger_action=trigger_action,
                is_required=is_required,
                is_active=is_active,
                reward_pool_id=pool.id if pool else None,
                message_template=message_template,
            )
        )

    def account(self, level, entity_id=None, channel="sms", **overrides):
        values = {
            "id": uuid.uuid4(),
            "level": level,
            "entity_id": entity_id,
            "channel": channel,
            "friendly_name": f"{level} {channel}",
            "credentials_ref": f"vault://{level}/{channel}",
            "from_address": "+15559990000" if channel == "sms" else f"{level}@example.com",
            "enabled": True,
            "validated": True,
            "last_validated_at": NOW,
            "failure_count": 0,
            "current_month_usage": 0,
        }
        values.update(overrides)
        return self._save(MessagingAccount(**values))


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def scenario(seed):
    """Client under an agency, one campaign with a recipient and a stocked pool."""
    agency = seed.agency()
    client = seed.client(agency=agency)
    campaign = seed.campaign(client)
    recipient = seed.recipient(campaign)
    pool = seed.pool(client, codes=("CODE-1", "CODE-2", "CODE-3"))
    return {
        "agency": agency,
        "client": client,
        "campaign": campaign,
        "recipient": recipient,
        "pool": pool,
    }


@pytest.fixture
def test_client(db):
    """
    TestClient on the live SQLite database. Each request gets its own session,
    so the test session must not hold a transaction open across calls.
    """

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
