from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import croniter
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app import config
from app.db import SessionLocal
from app.models.campaign import Campaign
from app.models.delivery_record import DeliveryRecord
from app.services.activity_logger import log_activity
from app.services.channel_resolver import ActiveAccount, record_send_failure, resolve_channel
from app.services.fulfillment_orchestrator import REASON_NO_CHANNEL, resume
from app.services.tenant_service import get_campaign


logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    selected: int = 0
    retried: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "selected": self.selected,
            "retried": self.retried,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _utcnow() -> datetime:
    # Keep naive UTC timestamps to match existing DB column types/semantics.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def compute_next_sweep_at(*, base_utc: datetime, cron_expr: str | None = None, tz_name: str | None = None) -> datetime:
    cron_expr = cron_expr or config.DELIVERY_RETRY_CRON
    tz = ZoneInfo(tz_name or config.DELIVERY_RETRY_TIMEZONE)

    if base_utc.tzinfo is None:
        base_utc = base_utc.replace(tzinfo=ZoneInfo("UTC"))
    base_local = base_utc.astimezone(tz)

    next_local: datetime = croniter(cron_expr, base_local).get_next(datetime)
    return next_local.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)


def _still_without_channel(db: Session, record: DeliveryRecord, now: datetime, cache: dict) -> bool:
    key = (record.campaign_id, record.channel)
    if key not in cache:
        campaign = get_campaign(db, record.campaign_id)
        resolution = resolve_channel(
            db,
            campaign.client_id if campaign else None,
            record.channel,
            now=now,
            audit=False,
        )
        cache[key] = resolution.active is None
    return cache[key]


# ============================================================
# RETRY SWEEP
# ============================================================
def _claim_retryable(
    db: Session,
    *,
    now: datetime,
    batch_size: int,
    max_retries: int,
    stats: SweepStats,
) -> list:
    # records still waiting on a channel are passed over; keep paging until
    # the batch is full or nothing retryable is left
    claimed = []
    seen = []
    no_channel = {}

    while len(claimed) < batch_size:
        q = (
            db.query(DeliveryRecord)
            .filter(DeliveryRecord.delivery_status == "failed")
            .filter(DeliveryRecord.retryable.is_(True))
            .filter(DeliveryRecord.retry_count < max_retries)
        )
        if seen:
            q = q.filter(DeliveryRecord.id.notin_(seen))
        records = (
            q.order_by(DeliveryRecord.last_attempt_at.asc(), DeliveryRecord.id.asc())
            .with_for_update(skip_locked=True)
            .limit(batch_size - len(claimed))
            .all()
        )
        if not records:
            break
        stats.selected += len(records)

        for record in records:
            seen.append(record.id)

            if record.failure_reason == REASON_NO_CHANNEL and _still_without_channel(db, record, now, no_channel):
                # waiting on configuration, not a consumed attempt
                stats.skipped += 1
                continue

            swapped = db.execute(
                update(DeliveryRecord)
                .where(DeliveryRecord.id == record.id)
                .where(DeliveryRecord.delivery_status == "failed")
                .where(DeliveryRecord.retry_count == record.retry_count)
                .values(
                    delivery_status="pending",
                    stage="allocated" if record.reward_unit_id else "evaluated",
                    retry_count=DeliveryRecord.retry_count + 1,
                    last_retry_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if swapped:
                claimed.append(record.id)
            else:
                stats.skipped += 1

    return claimed


def sweep_failed_deliveries(
    db: Session,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    max_retries: int | None = None,
    sender=None,
) -> SweepStats:
    """
    Re-attempts one bounded batch of retryable failed deliveries, oldest
    attempt first. Each retry consumes one unit of ``retry_count`` and resolves
    the messaging channel again. Records already sent are never selected.
    """
    if now is None:
        now = _utcnow()
    if batch_size is None:
        batch_size = config.DELIVERY_RETRY_BATCH_SIZE
    if max_retries is None:
        max_retries = config.DELIVERY_MAX_RETRIES

    stats = SweepStats()
    claimed = _claim_retryable(db, now=now, batch_size=batch_size, max_retries=max_retries, stats=stats)
    db.commit()

    for record_id in claimed:
        try:
            record = db.query(DeliveryRecord).populate_existing().filter(DeliveryRecord.id == record_id).one()
            outcome = resume(db, record, now=now, sender=sender)
        except Exception:
            db.rollback()
            logger.exception("delivery retry crashed", extra={"delivery_record_id": str(record_id)})
            stats.failed += 1
            continue

        stats.retried += 1
        if outcome.status == "sent":
            stats.sent += 1
        else:
            stats.failed += 1

        log_activity(
            db,
            category="gift_card",
            event_type="delivery_retry",
            status="success" if outcome.status == "sent" else "failed",
            severity="info" if outcome.status == "sent" else "warning",
            recipient_id=record.recipient_id,
            campaign_id=record.campaign_id,
            delivery_record_id=record.id,
            details={"retryCount": record.retry_count, "maxRetries": max_retries, "reason": outcome.reason},
        )
        db.commit()

        if outcome.status == "failed" and (not outcome.retryable or record.retry_count >= max_retries):
            logger.error(
                "delivery retries exhausted",
                extra={
                    "delivery_record_id": str(record.id),
                    "retry_count": record.retry_count,
                    "reason": outcome.reason,
                },
            )

    if stats.selected:
        logger.info("delivery retry sweep finished", extra=stats.as_dict())
    return stats


def list_exhausted_deliveries(db: Session, *, max_retries: int | None = None, client_id=None, campaign_id=None, limit: int = 100):
    """Failed deliveries that no sweep will pick up again."""
    if max_retries is None:
        max_retries = config.DELIVERY_MAX_RETRIES

    q = (
        db.query(DeliveryRecord)
        .filter(DeliveryRecord.delivery_status == "failed")
        .filter((DeliveryRecord.retryable.is_(False)) | (DeliveryRecord.retry_count >= max_retries))
    )
    if client_id is not None:
        q = q.join(Campaign, Campaign.id == DeliveryRecord.campaign_id).filter(Campaign.client_id == client_id)
    if campaign_id is not None:
        q = q.filter(DeliveryRecord.campaign_id == campaign_id)
    return q.order_by(DeliveryRecord.last_attempt_at.desc()).limit(limit).all()


# ============================================================
# STALLED FULFILLMENTS
# ============================================================
def _account_from_record(record: DeliveryRecord) -> ActiveAccount:
    return ActiveAccount(
        level=record.account_level,
        name=record.account_level or "",
        account_id=record.account_id,
        entity_id=None,
        credentials_ref=None,
        from_address=None,
        reason="available",
    )


def resume_stalled_fulfillments(
    db: Session,
    *,
    now: datetime | None = None,
    stall_seconds: int | None = None,
    batch_size: int | None = None,
    sender=None,
) -> SweepStats:
    """
    Picks up pending records left behind by a crashed worker. Records stuck
    before ``sending`` continue from their stage; a record stuck in ``sending``
    may or may not have reached the gateway, so it is failed as a timeout and
    left to the retry sweep.
    """
    if now is None:
        now = _utcnow()
    if stall_seconds is None:
        stall_seconds = config.DELIVERY_STALL_SECONDS
    if batch_size is None:
        batch_size = config.DELIVERY_RETRY_BATCH_SIZE

    cutoff = now - timedelta(seconds=int(stall_seconds))
    touched_at = func.coalesce(DeliveryRecord.last_attempt_at, DeliveryRecord.created_at)

    records = (
        db.query(DeliveryRecord)
        .filter(DeliveryRecord.delivery_status == "pending")
        .filter(touched_at < cutoff)
        .order_by(touched_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
        .all()
    )

    stats = SweepStats(selected=len(records))
    claimed = []
    for record in records:
        swapped = db.execute(
            update(DeliveryRecord)
            .where(DeliveryRecord.id == record.id)
            .where(DeliveryRecord.delivery_status == "pending")
            .where(DeliveryRecord.stage == record.stage)
            .where(touched_at < cutoff)
            .values(last_attempt_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if swapped:
            claimed.append((record.id, record.stage))
        else:
            stats.skipped += 1
    db.commit()

    for record_id, stage in claimed:
        record = db.query(DeliveryRecord).populate_existing().filter(DeliveryRecord.id == record_id).one()

        if stage == "sending":
            record.delivery_status = "failed"
            record.stage = "failed"
            record.retryable = True
            record.failure_reason = "send timed out (worker stalled)"
            record_send_failure(db, _account_from_record(record), record.failure_reason, now=now)
            db.commit()
            stats.failed += 1
            logger.warning("stalled send marked failed", extra={"delivery_record_id": str(record_id)})
            continue

        try:
            outcome = resume(db, record, now=now, sender=sender)
        except Exception:
            db.rollback()
            logger.exception("stalled fulfillment resume crashed", extra={"delivery_record_id": str(record_id)})
            stats.failed += 1
            continue

        stats.retried += 1
        if outcome.status == "sent":
            stats.sent += 1
        else:
            stats.failed += 1
        logger.info(
            "stalled fulfillment resumed",
            extra={"delivery_record_id": str(record_id), "stage": stage, "status": outcome.status},
        )

    return stats


# ============================================================
# LOOP
# ============================================================
def run_retry_loop(
    *,
    cron_expr: str | None = None,
    tz_name: str | None = None,
    batch_size: int | None = None,
    max_retries: int | None = None,
    max_sleep_seconds: int = 300,
):
    logger.info(
        "delivery retry scheduler started",
        extra={
            "cron": cron_expr or config.DELIVERY_RETRY_CRON,
            "timezone": tz_name or config.DELIVERY_RETRY_TIMEZONE,
            "batch_size": batch_size or config.DELIVERY_RETRY_BATCH_SIZE,
            "max_retries": max_retries or config.DELIVERY_MAX_RETRIES,
        },
    )

    while True:
        now = _utcnow()

        db = SessionLocal()
        try:
            resume_stalled_fulfillments(db, now=now, batch_size=batch_size)
            sweep_failed_deliveries(db, now=now, batch_size=batch_size, max_retries=max_retries)
        except Exception:
            db.rollback()
            # keep the loop alive; the next tick retries
            logger.exception("delivery retry sweep failed")
        finally:
            db.close()

        next_at = compute_next_sweep_at(base_utc=_utcnow(), cron_expr=cron_expr, tz_name=tz_name)
        sleep_for = min(max_sleep_seconds, max(1, int((next_at - _utcnow()).total_seconds())))
        logger.debug("sleeping until next sweep", extra={"next_at": next_at.isoformat(), "sleep_for_seconds": sleep_for})
        time.sleep(sleep_for)


def main():
    logging.basicConfig(level=logging.INFO)
    run_retry_loop()


if __name__ == "__main__":
    main()
