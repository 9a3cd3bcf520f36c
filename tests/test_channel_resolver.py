from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from app import config
from app.models.activity_log import ActivityLog
from app.models.messaging_account import MessagingAccount
from app.services.channel_resolver import (
    AccountSnapshot,
    ActiveAccount,
    REASON_AVAILABLE,
    REASON_CIRCUIT_OPEN,
    REASON_DISABLED,
    REASON_NOT_CONFIGURED,
    REASON_NOT_VALIDATED,
    REASON_OVER_LIMIT,
    invalidate_account,
    mark_validated,
    record_send_failure,
    record_send_success,
    reset_circuit,
    resolve,
    resolve_channel,
)

from conftest import NOW


def _snapshot(level, **overrides):
    values = {
        "level": level,
        "name": level,
        "configured": True,
        "enabled": True,
        "validated": True,
        "last_validated_at": NOW,
        "credentials_ref": f"vault://{level}",
        "from_address": "+15559990000",
    }
    values.update(overrides)
    return AccountSnapshot(**values)


def _active(account):
    return ActiveAccount(
        level=account.level,
        name=account.friendly_name,
        account_id=account.id,
        entity_id=account.entity_id,
        credentials_ref=account.credentials_ref,
        from_address=account.from_address,
        reason=REASON_AVAILABLE,
    )


def _reload(db, account_id):
    db.expire_all()
    return db.query(MessagingAccount).filter(MessagingAccount.id == account_id).one()


# ============================================================
# PURE RESOLUTION
# ============================================================
def test_first_available_level_wins():
    chain = [
        _snapshot("client"),
        _snapshot("agency"),
        _snapshot("platform"),
    ]
    resolution = resolve(chain, now=NOW)

    assert resolution.active.level == "client"
    assert resolution.fallback_occurred is False
    assert [item.reason for item in resolution.fallback_chain] == [REASON_AVAILABLE] * 3


def test_fallback_chain_carries_a_reason_per_level():
    chain = [
        _snapshot("client", configured=False),
        _snapshot("agency", enabled=False),
        _snapshot("platform", validated=False),
        _snapshot("legacy_env"),
    ]
    resolution = resolve(chain, now=NOW)

    assert resolution.active.level == "legacy_env"
    assert resolution.fallback_occurred is True
    assert [(item.level, item.reason) for item in resolution.fallback_chain] == [
        ("client", REASON_NOT_CONFIGURED),
        ("agency", REASON_DISABLED),
        ("platform", REASON_NOT_VALIDATED),
        ("legacy_env", REASON_AVAILABLE),
    ]


def test_open_circuit_skips_level_until_cooldown_passes():
    chain = [_snapshot("client", circuit_open_until=NOW + timedelta(minutes=10)), _snapshot("platform")]

    assert resolve(chain, now=NOW).active.level == "platform"
    assert resolve(chain, now=NOW).fallback_chain[0].reason == REASON_CIRCUIT_OPEN
    assert resolve(chain, now=NOW + timedelta(minutes=11)).active.level == "client"


def test_usage_limit_applies_to_the_current_month_only():
    this_month = f"{NOW.year:04d}-{NOW.month:02d}"
    over = _snapshot("client", monthly_usage_limit=100, current_month_usage=100, usage_month=this_month)
    rolled = _snapshot("client", monthly_usage_limit=100, current_month_usage=100, usage_month="2026-09")

    assert resolve([over], now=NOW).fallback_chain[0].reason == REASON_OVER_LIMIT
    assert resolve([over], now=NOW).active is None
    assert resolve([rolled], now=NOW).active.level == "client"


def test_stale_validation_is_a_warning_not_a_gate():
    stale = _snapshot("client", last_validated_at=NOW - timedelta(days=45))
    resolution = resolve([stale], now=NOW)

    assert resolution.active.level == "client"
    assert resolution.active.needs_revalidation is True
    assert resolution.fallback_chain[0].needs_revalidation is True


def test_nothing_available_reports_every_level():
    resolution = resolve([_snapshot("client", configured=False), _snapshot("platform", enabled=False)], now=NOW)

    assert resolution.active is None
    assert resolution.as_dict()["success"] is False
    assert len(resolution.as_dict()["fallbackChain"]) == 2


# ============================================================
# DATABASE CHAIN
# ============================================================
def test_resolve_channel_walks_client_agency_platform(db, seed, scenario):
    client = scenario["client"]
    agency = scenario["agency"]
    seed.account("client", client.id, enabled=False)
    seed.account("agency", agency.id)
    seed.account("platform", None)

    resolution = resolve_channel(db, client.id, "sms", now=NOW)
    db.commit()

    assert [item.level for item in resolution.fallback_chain] == ["client", "agency", "platform", "legacy_env"]
    assert resolution.active.level == "agency"
    assert resolution.fallback_chain[0].reason == REASON_DISABLED
    assert resolution.fallback_chain[3].reason == REASON_NOT_CONFIGURED

    audit = db.query(ActivityLog).filter(ActivityLog.event_type == "channel_resolved").one()
    assert audit.severity == "warning"
    assert audit.details["activeLevel"] == "agency"


def test_accounts_are_per_channel(db, seed, scenario):
    client = scenario["client"]
    seed.account("client", client.id, channel="email")

    assert resolve_channel(db, client.id, "sms", now=NOW).active is None
    assert resolve_channel(db, client.id, "email", now=NOW).active.level == "client"
    db.commit()

    unavailable = db.query(ActivityLog).filter(ActivityLog.event_type == "channel_unavailable").count()
    assert unavailable == 1


def test_legacy_environment_account_is_the_last_resort(db, monkeypatch, scenario):
    monkeypatch.setattr(config, "LEGACY_MESSAGING_CREDENTIALS_REF", "env://sms")
    monkeypatch.setattr(config, "LEGACY_MESSAGING_FROM_ADDRESS", "+15550009999")

    sms = resolve_channel(db, scenario["client"].id, "sms", now=NOW, audit=False)
    email = resolve_channel(db, scenario["client"].id, "email", now=NOW, audit=False)
    db.rollback()

    assert sms.active.level == "legacy_env"
    assert sms.active.account_id is None
    assert sms.active.from_address == "+15550009999"
    assert email.active is None


# ============================================================
# HEALTH BOOKKEEPING
# ============================================================
def test_circuit_opens_after_threshold_failures(db, seed, scenario):
    account = seed.account("client", scenario["client"].id)
    active = _active(account)

    opened = [record_send_failure(db, active, "gateway returned 500", now=NOW) for _ in range(5)]
    db.commit()

    assert opened == [False, False, False, False, True]
    reloaded = _reload(db, account.id)
    assert reloaded.failure_count == 5
    assert reloaded.circuit_open_until == NOW + timedelta(minutes=30)
    assert reloaded.last_error == "gateway returned 500"

    resolution = resolve_channel(db, scenario["client"].id, "sms", now=NOW + timedelta(minutes=5), audit=False)
    assert resolution.active is None
    assert resolution.fallback_chain[0].reason == REASON_CIRCUIT_OPEN
    db.commit()

    assert db.query(ActivityLog).filter(ActivityLog.event_type == "circuit_opened").count() == 1


def test_failure_after_cooldown_reopens_circuit(db, seed, scenario):
    account = seed.account(
        "client",
        scenario["client"].id,
        failure_count=5,
        circuit_open_until=NOW - timedelta(minutes=1),
    )

    assert record_send_failure(db, _active(account), "timeout", now=NOW) is True
    db.commit()
    assert _reload(db, account.id).circuit_open_until == NOW + timedelta(minutes=30)


def test_success_resets_failures_and_counts_usage(db, seed, scenario):
    account = seed.account(
        "client",
        scenario["client"].id,
        failure_count=3,
        current_month_usage=7,
        usage_month="2026-10",
    )

    record_send_success(db, _active(account), now=NOW)
    db.commit()

    reloaded = _reload(db, account.id)
    assert reloaded.failure_count == 0
    assert reloaded.circuit_open_until is None
    assert reloaded.current_month_usage == 8

    record_send_success(db, _active(account), now=NOW.replace(month=11))
    db.commit()

    reloaded = _reload(db, account.id)
    assert reloaded.current_month_usage == 1
    assert reloaded.usage_month == "2026-11"


def test_legacy_environment_level_is_never_recorded(db):
    legacy = ActiveAccount(
        level="legacy_env",
        name="Environment fallback",
        account_id=None,
        entity_id=None,
        credentials_ref="env://sms",
        from_address="+15550009999",
        reason=REASON_AVAILABLE,
    )
    assert record_send_failure(db, legacy, "boom", now=NOW) is False
    record_send_success(db, legacy, now=NOW)
    db.rollback()


def test_operator_actions(db, seed, scenario):
    account = seed.account(
        "client",
        scenario["client"].id,
        failure_count=5,
        circuit_open_until=NOW + timedelta(minutes=20),
    )

    assert reset_circuit(db, account.id) is True
    db.commit()
    reloaded = _reload(db, account.id)
    assert reloaded.failure_count == 0
    assert reloaded.circuit_open_until is None

    assert invalidate_account(db, account.id, "credentials revoked", now=NOW) is True
    db.commit()
    reloaded = _reload(db, account.id)
    assert reloaded.validated is False
    assert reloaded.last_error == "credentials revoked"

    assert mark_validated(db, account.id, now=NOW) is True
    db.commit()
    assert _reload(db, account.id).validated is True


def test_one_platform_account_per_channel(db, seed):
    seed.account("platform", None)
    seed.account("platform", None, channel="email")

    with pytest.raises(IntegrityError):
        seed.account("platform", None)
    db.rollback()

    assert db.query(MessagingAccount).filter(MessagingAccount.level == "platform").count() == 2
    db.commit()
