"""
Reward fulfillment for a newly completed condition.

One ``delivery_records`` row per (recipient, condition) carries the state
machine::

    evaluated -> allocating -> allocated -> resolving -> resolved -> sending -> sent | failed

Every transition is committed, so a crashed run resumes from the persisted
stage; an ``allocated`` record never claims inventory again. Nothing raises out
of ``fulfill_condition`` / ``deliver``: every outcome is persisted and returned
as a DeliveryOutcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.campaign_condition import CampaignCondition
from app.models.delivery_record import DeliveryRecord
from app.models.reward_pool import RewardPool
from app.models.reward_unit import RewardUnit
from app.services import messaging_gateway
from app.services.activity_logger import log_activity
from app.services.channel_resolver import record_send_failure, record_send_success, resolve_channel
from app.services.inventory_allocator import InsufficientInventory, claim_reward_unit, mark_unit_delivered
from app.services.message_templates import render_reward_message
from app.services.messaging_gateway import SendResult
from app.services.tenant_service import get_campaign, get_client, get_recipient


logger = logging.getLogger(__name__)

TRIGGER_CHANNELS = {
    "send_sms_reward": "sms",
    "send_email_reward": "email",
}

REASON_POOL_EXHAUSTED = "pool exhausted"
REASON_NO_CHANNEL = "no channel"


@dataclass
class DeliveryOutcome:
    status: str                     # sent | failed | pending | skipped
    stage: str | None = None
    delivery_record_id: object = None
    reason: str | None = None
    retryable: bool = False
    already_processed: bool = False

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "stage": self.stage,
            "deliveryRecordId": str(self.delivery_record_id) if self.delivery_record_id else None,
            "reason": self.reason,
            "retryable": self.retryable,
            "alreadyProcessed": self.already_processed,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _outcome(record: DeliveryRecord, *, already_processed: bool = False) -> DeliveryOutcome:
    return DeliveryOutcome(
        status=record.delivery_status,
        stage=record.stage,
        delivery_record_id=record.id,
        reason=record.failure_reason,
        retryable=bool(record.retryable) if record.delivery_status == "failed" else False,
        already_processed=already_processed,
    )


def _destination_for(recipient, channel: str) -> str | None:
    if recipient is None:
        return None
    value = recipient.email if channel == "email" else recipient.phone
    return (value or "").strip() or None


def _find_record(db: Session, recipient_id, condition_id) -> DeliveryRecord | None:
    return (
        db.query(DeliveryRecord)
        .populate_existing()
        .filter(DeliveryRecord.recipient_id == recipient_id)
        .filter(DeliveryRecord.condition_id == condition_id)
        .first()
    )


def open_delivery_record(db: Session, recipient_id, condition: CampaignCondition, *, now: datetime | None = None) -> DeliveryRecord | None:
    """
    Inserts the ``evaluated`` record for a reward action without committing,
    so it lands in the same transaction as the condition completion and the
    stalled sweep can pick it up if fulfillment never starts. Returns None for
    actions that deliver nothing.
    """
    channel = TRIGGER_CHANNELS.get(condition.trigger_action)
    if channel is None:
        return None

    record = _find_record(db, recipient_id, condition.id)
    if record:
        return record

    recipient = get_recipient(db, recipient_id)
    try:
        with db.begin_nested():
            record = DeliveryRecord(
                recipient_id=recipient_id,
                campaign_id=condition.campaign_id,
                condition_id=condition.id,
                channel=channel,
                destination=_destination_for(recipient, channel),
                stage="evaluated",
                delivery_status="pending",
                retryable=True,
                retry_count=0,
            )
            if now is not None:
                record.created_at = now
            db.add(record)
            db.flush()
    except IntegrityError:
        record = _find_record(db, recipient_id, condition.id)
    return record


def _get_or_create_record(db: Session, *, recipient_id, condition: CampaignCondition) -> DeliveryRecord:
    record = open_delivery_record(db, recipient_id, condition)
    db.commit()
    return record


def _fail(db: Session, record: DeliveryRecord, reason: str, *, retryable: bool, now: datetime) -> None:
    record.delivery_status = "failed"
    record.stage = "failed"
    record.failure_reason = (reason or "unknown error")[:2000]
    record.retryable = retryable
    record.last_attempt_at = now


# ============================================================
# STEP 1: ALLOCATE
# ============================================================
def _allocate(db: Session, record: DeliveryRecord, condition: CampaignCondition, now: datetime) -> DeliveryOutcome | None:
    record.stage = "allocating"
    db.commit()

    if not condition.reward_pool_id:
        _fail(db, record, "no reward pool configured for condition", retryable=False, now=now)
        db.commit()
        return _outcome(record)

    try:
        claim = claim_reward_unit(
            db,
            condition.reward_pool_id,
            record.recipient_id,
            campaign_id=record.campaign_id,
            condition_id=record.condition_id,
            now=now,
        )
    except InsufficientInventory as e:
        _fail(db, record, REASON_POOL_EXHAUSTED, retryable=False, now=now)
        log_activity(
            db,
            category="gift_card",
            event_type="card_claim_failed",
            status="failed",
            severity="error",
            recipient_id=record.recipient_id,
            campaign_id=record.campaign_id,
            delivery_record_id=record.id,
            details={"poolId": condition.reward_pool_id, "reason": e.reason},
        )
        db.commit()
        logger.warning(
            "fulfillment failed: pool exhausted",
            extra={"delivery_record_id": str(record.id), "pool_id": str(condition.reward_pool_id)},
        )
        return _outcome(record)

    record.reward_unit_id = claim.unit.id
    record.stage = "allocated"
    log_activity(
        db,
        category="gift_card",
        event_type="card_claimed",
        recipient_id=record.recipient_id,
        campaign_id=record.campaign_id,
        delivery_record_id=record.id,
        details={"poolId": claim.pool.id, "unitId": claim.unit.id, "alreadyAssigned": claim.already_assigned},
    )
    db.commit()
    return None


# ============================================================
# STEPS 2-4: RESOLVE, SEND, RECORD
# ============================================================
def deliver(db: Session, record: DeliveryRecord, *, now: datetime | None = None, sender=None) -> DeliveryOutcome:
    """
    Runs resolve -> send -> record for an allocated delivery record. The retry
    scheduler re-enters here; the channel is resolved again on every call.
    """
    if now is None:
        now = _utcnow()
    if sender is None:
        sender = messaging_gateway.send_message

    if record.delivery_status == "sent":
        return _outcome(record, already_processed=True)

    unit = None
    if record.reward_unit_id:
        unit = db.query(RewardUnit).populate_existing().filter(RewardUnit.id == record.reward_unit_id).first()
    if unit is None:
        _fail(db, record, "no reward unit allocated", retryable=False, now=now)
        db.commit()
        return _outcome(record)
    if unit.status not in ("claimed", "delivered"):
        # released by an operator in the meantime
        _fail(db, record, f"reward unit is {unit.status}", retryable=False, now=now)
        db.commit()
        return _outcome(record)

    recipient = get_recipient(db, record.recipient_id)
    destination = record.destination or _destination_for(recipient, record.channel)
    if not destination:
        _fail(db, record, f"recipient has no {'email' if record.channel == 'email' else 'phone'}", retryable=False, now=now)
        db.commit()
        return _outcome(record)
    record.destination = destination

    campaign = get_campaign(db, record.campaign_id)

    record.stage = "resolving"
    record.last_attempt_at = now
    db.commit()

    resolution = resolve_channel(
        db,
        campaign.client_id if campaign else None,
        record.channel,
        now=now,
        recipient_id=record.recipient_id,
        campaign_id=record.campaign_id,
        delivery_record_id=record.id,
    )
    active = resolution.active
    if active is None:
        _fail(db, record, REASON_NO_CHANNEL, retryable=True, now=now)
        db.commit()
        return _outcome(record)

    record.stage = "resolved"
    record.account_level = active.level
    record.account_id = active.account_id
    db.commit()

    condition = db.query(CampaignCondition).filter(CampaignCondition.id == record.condition_id).first()
    pool = db.query(RewardPool).filter(RewardPool.id == unit.pool_id).first()
    client = get_client(db, campaign.client_id) if campaign else None

    body = render_reward_message(
        condition=condition,
        recipient=recipient,
        unit=unit,
        pool=pool,
        client_name=client.name if client else None,
        channel=record.channel,
    )

    record.message_body = body
    record.stage = "sending"
    db.commit()

    try:
        result = sender(active, destination, body, channel=record.channel)
    except Exception as e:
        logger.exception("message sender raised", extra={"delivery_record_id": str(record.id)})
        result = SendResult(success=False, error=f"send error: {e}")

    if result.success:
        record.delivery_status = "sent"
        record.stage = "sent"
        record.sent_at = now
        record.provider_message_id = result.provider_message_id
        record.failure_reason = None
        mark_unit_delivered(db, unit.id, now=now)
        record_send_success(db, active, now=now)
        log_activity(
            db,
            category="gift_card",
            event_type=f"{record.channel}_sent",
            recipient_id=record.recipient_id,
            campaign_id=record.campaign_id,
            delivery_record_id=record.id,
            details={
                "level": active.level,
                "providerMessageId": result.provider_message_id,
                "retryCount": record.retry_count,
            },
        )
        db.commit()
        logger.info(
            "reward delivered",
            extra={"delivery_record_id": str(record.id), "level": active.level, "retry_count": record.retry_count},
        )
        return _outcome(record)

    _fail(db, record, result.error or "send failed", retryable=True, now=now)
    record_send_failure(db, active, record.failure_reason, now=now)
    log_activity(
        db,
        category="gift_card",
        event_type=f"{record.channel}_failed",
        status="failed",
        severity="error",
        recipient_id=record.recipient_id,
        campaign_id=record.campaign_id,
        delivery_record_id=record.id,
        details={
            "level": active.level,
            "error": result.error,
            "timedOut": result.timed_out,
            "retryCount": record.retry_count,
        },
    )
    db.commit()
    logger.warning(
        "reward delivery failed",
        extra={"delivery_record_id": str(record.id), "level": active.level, "error": result.error},
    )
    return _outcome(record)


def _run(db: Session, recipient_id, condition_id, *, now: datetime, sender) -> DeliveryOutcome:
    condition = db.query(CampaignCondition).filter(CampaignCondition.id == condition_id).first()
    if not condition:
        return DeliveryOutcome(status="skipped", reason="condition not found")

    if condition.trigger_action == "log_only":
        log_activity(
            db,
            category="campaign",
            event_type="condition_logged",
            recipient_id=recipient_id,
            campaign_id=condition.campaign_id,
            details={"conditionId": condition.id, "sequenceOrder": condition.sequence_order},
        )
        db.commit()
        return DeliveryOutcome(status="skipped", reason="log_only")

    if condition.trigger_action not in TRIGGER_CHANNELS:
        logger.warning(
            "unknown trigger action",
            extra={"condition_id": str(condition.id), "trigger_action": condition.trigger_action},
        )
        return DeliveryOutcome(status="skipped", reason=f"unknown trigger action: {condition.trigger_action}")

    record = _get_or_create_record(db, recipient_id=recipient_id, condition=condition)

    if record.delivery_status in ("sent", "failed"):
        # retries of failed records belong to the retry scheduler
        return _outcome(record, already_processed=True)

    return resume(db, record, now=now, sender=sender)


def resume(db: Session, record: DeliveryRecord, *, now: datetime | None = None, sender=None) -> DeliveryOutcome:
    """
    Continues a delivery record from its persisted stage: allocation only runs
    when no unit is bound yet.
    """
    if now is None:
        now = _utcnow()

    if record.reward_unit_id is None:
        condition = db.query(CampaignCondition).filter(CampaignCondition.id == record.condition_id).first()
        if condition is None:
            _fail(db, record, "condition not found", retryable=False, now=now)
            db.commit()
            return _outcome(record)

        outcome = _allocate(db, record, condition, now)
        if outcome is not None:
            return outcome

    return deliver(db, record, now=now, sender=sender)


def fulfill_condition(db: Session, recipient_id, condition_id, *, now: datetime | None = None, sender=None) -> DeliveryOutcome:
    if now is None:
        now = _utcnow()

    try:
        return _run(db, recipient_id, condition_id, now=now, sender=sender)
    except Exception as e:
        db.rollback()
        logger.exception(
            "fulfillment crashed",
            extra={"recipient_id": str(recipient_id), "condition_id": str(condition_id)},
        )

        record = _find_record(db, recipient_id, condition_id)
        if record is None:
            return DeliveryOutcome(status="failed", reason=str(e), retryable=True)

        if record.delivery_status == "pending":
            _fail(db, record, f"internal error: {e}", retryable=True, now=now)
            db.commit()
        return _outcome(record)
