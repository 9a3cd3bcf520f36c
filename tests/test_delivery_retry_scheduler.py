from datetime import datetime, timedelta

from app.models.delivery_record import DeliveryRecord
from app.models.messaging_account import MessagingAccount
from app.services.delivery_retry_scheduler import (
    compute_next_sweep_at,
    list_exhausted_deliveries,
    resume_stalled_fulfillments,
    sweep_failed_deliveries,
)
from app.services.fulfillment_orchestrator import fulfill_condition
from app.services.messaging_gateway import SendResult

from conftest import NOW, FakeSender


def _failing(n):
    return FakeSender([SendResult(success=False, error="gateway returned 500") for _ in range(n)])


def _record(db, record_id):
    db.expire_all()
    return db.query(DeliveryRecord).filter(DeliveryRecord.id == record_id).one()


def _failed_delivery(db, seed, scenario, sequence_order=1, recipient=None):
    condition = seed.condition(scenario["campaign"], sequence_order, "form_submitted", pool=scenario["pool"])
    outcome = fulfill_condition(db, (recipient or scenario["recipient"]).id, condition.id, now=NOW, sender=_failing(1))
    assert outcome.status == "failed"
    return outcome.delivery_record_id


def test_sweep_retries_failed_delivery(db, seed, scenario, sender):
    seed.account("client", scenario["client"].id)
    record_id = _failed_delivery(db, seed, scenario)

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), sender=sender)

    assert (stats.selected, stats.retried, stats.sent) == (1, 1, 1)
    record = _record(db, record_id)
    assert record.delivery_status == "sent"
    assert record.retry_count == 1
    assert record.last_retry_at == NOW + timedelta(minutes=5)
    assert len(sender.calls) == 1
    db.commit()


def test_retry_ceiling_stops_at_three_attempts(db, seed, scenario, monkeypatch):
    from app import config

    # keep the circuit closed so every sweep reaches the gateway
    monkeypatch.setattr(config, "CIRCUIT_BREAKER_THRESHOLD", 100)
    seed.account("client", scenario["client"].id)
    record_id = _failed_delivery(db, seed, scenario)
    failing = _failing(10)

    for minute in range(1, 6):
        sweep_failed_deliveries(db, now=NOW + timedelta(minutes=minute), sender=failing)

    record = _record(db, record_id)
    assert record.delivery_status == "failed"
    assert record.retry_count == 3
    assert len(failing.calls) == 3
    assert [r.id for r in list_exhausted_deliveries(db)] == [record_id]
    db.commit()


def test_sent_records_are_never_selected(db, seed, scenario, sender):
    seed.account("client", scenario["client"].id)
    condition = seed.condition(scenario["campaign"], 1, "form_submitted", pool=scenario["pool"])
    fulfill_condition(db, scenario["recipient"].id, condition.id, now=NOW, sender=sender)

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), sender=sender)

    assert stats.selected == 0
    assert len(sender.calls) == 1
    db.commit()


def test_terminal_failures_are_not_retried(db, seed, scenario, sender):
    seed.account("client", scenario["client"].id)
    empty = seed.pool(scenario["client"], codes=())
    condition = seed.condition(scenario["campaign"], 1, "form_submitted", pool=empty)
    outcome = fulfill_condition(db, scenario["recipient"].id, condition.id, now=NOW, sender=sender)

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), sender=sender)

    assert stats.selected == 0
    assert [r.id for r in list_exhausted_deliveries(db)] == [outcome.delivery_record_id]
    db.commit()


def test_batch_size_bounds_one_sweep(db, seed, scenario, sender):
    seed.account("client", scenario["client"].id)
    second = seed.recipient(scenario["campaign"], first_name="Sam", phone="+15550002222")
    third = seed.recipient(scenario["campaign"], first_name="Ari", phone="+15550003333")
    condition = seed.condition(scenario["campaign"], 1, "form_submitted", pool=scenario["pool"])
    for recipient in (scenario["recipient"], second, third):
        fulfill_condition(db, recipient.id, condition.id, now=NOW, sender=_failing(1))

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), batch_size=2, sender=sender)

    assert stats.selected == 2
    assert len(sender.calls) == 2
    db.commit()


def test_no_channel_records_wait_without_consuming_retries(db, seed, scenario, sender):
    condition = seed.condition(scenario["campaign"], 1, "form_submitted", pool=scenario["pool"])
    outcome = fulfill_condition(db, scenario["recipient"].id, condition.id, now=NOW, sender=sender)
    assert outcome.reason == "no channel"

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), sender=sender)
    assert stats.skipped == 1
    assert _record(db, outcome.delivery_record_id).retry_count == 0

    seed.account("platform", None)
    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=10), sender=sender)

    assert stats.sent == 1
    record = _record(db, outcome.delivery_record_id)
    assert record.delivery_status == "sent"
    assert record.account_level == "platform"
    assert record.retry_count == 1
    db.commit()


def test_records_waiting_on_a_channel_do_not_starve_the_sweep(db, seed, scenario, sender):
    campaign = scenario["campaign"]
    seed.account("platform", None, channel="email")
    sms_condition = seed.condition(campaign, 1, "form_submitted", pool=scenario["pool"])
    email_condition = seed.condition(campaign, 2, "call_completed", trigger_action="send_email_reward", pool=scenario["pool"])

    waiting = []
    for i in range(3):
        recipient = seed.recipient(campaign, first_name=f"Waiting {i}", phone=f"+1555000400{i}")
        record = DeliveryRecord(
            recipient_id=recipient.id,
            campaign_id=campaign.id,
            condition_id=sms_condition.id,
            channel="sms",
            destination=recipient.phone,
            stage="failed",
            delivery_status="failed",
            retryable=True,
            failure_reason="no channel",
            retry_count=0,
            last_attempt_at=NOW - timedelta(hours=1),
        )
        db.add(record)
        waiting.append(record)
    db.commit()

    outcome = fulfill_condition(db, scenario["recipient"].id, email_condition.id, now=NOW, sender=_failing(1))
    assert outcome.status == "failed"

    stats = sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), batch_size=2, sender=sender)

    assert stats.skipped == 3
    assert stats.sent == 1
    assert _record(db, outcome.delivery_record_id).delivery_status == "sent"
    assert sender.calls[0]["channel"] == "email"
    assert all(_record(db, r.id).retry_count == 0 for r in waiting)
    db.commit()


def test_retry_falls_back_when_the_client_circuit_opens(db, seed, scenario, sender):
    account = seed.account("client", scenario["client"].id, failure_count=4)
    seed.account("platform", None)
    record_id = _failed_delivery(db, seed, scenario)

    # the failure above was the fifth in a row for the client account
    db.expire_all()
    assert db.query(MessagingAccount).filter(MessagingAccount.id == account.id).one().circuit_open_until is not None

    sweep_failed_deliveries(db, now=NOW + timedelta(minutes=5), sender=sender)

    record = _record(db, record_id)
    assert record.delivery_status == "sent"
    assert record.account_level == "platform"
    db.commit()


def test_stalled_records_are_resumed_or_failed(db, seed, scenario, sender):
    account = seed.account("client", scenario["client"].id)
    second = seed.recipient(scenario["campaign"], first_name="Sam", phone="+15550002222")
    condition = seed.condition(scenario["campaign"], 1, "form_submitted", pool=scenario["pool"])

    stuck_before_send = DeliveryRecord(
        recipient_id=scenario["recipient"].id,
        campaign_id=scenario["campaign"].id,
        condition_id=condition.id,
        channel="sms",
        destination="+15550001111",
        stage="allocating",
        delivery_status="pending",
        retryable=True,
        retry_count=0,
        last_attempt_at=NOW - timedelta(hours=1),
    )
    stuck_in_send = DeliveryRecord(
        recipient_id=second.id,
        campaign_id=scenario["campaign"].id,
        condition_id=condition.id,
        channel="sms",
        destination="+15550002222",
        stage="sending",
        delivery_status="pending",
        retryable=True,
        retry_count=0,
        account_level="client",
        account_id=account.id,
        last_attempt_at=NOW - timedelta(hours=1),
    )
    db.add_all([stuck_before_send, stuck_in_send])
    db.commit()

    stats = resume_stalled_fulfillments(db, now=NOW, stall_seconds=900, sender=sender)

    assert stats.selected == 2
    assert _record(db, stuck_before_send.id).delivery_status == "sent"
    timed_out = _record(db, stuck_in_send.id)
    assert timed_out.delivery_status == "failed"
    assert timed_out.retryable is True
    assert "timed out" in timed_out.failure_reason
    assert db.query(MessagingAccount).filter(MessagingAccount.id == account.id).one().failure_count == 1
    db.commit()


def test_next_sweep_follows_cron():
    base = datetime(2026, 10, 1, 12, 2, 30)

    assert compute_next_sweep_at(base_utc=base, cron_expr="*/5 * * * *", tz_name="UTC") == datetime(2026, 10, 1, 12, 5)
    assert compute_next_sweep_at(base_utc=base, cron_expr="0 * * * *", tz_name="UTC") == datetime(2026, 10, 1, 13, 0)
