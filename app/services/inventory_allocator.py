"""
Reward inventory allocation.

Every mutation of ``reward_pools`` counters and ``reward_units.status`` goes
through this module. A claim is a single database transaction (savepoint when
called inside a wider one):

1. conditional decrement ``available_count = available_count - 1 WHERE
   available_count > 0`` -- on PostgreSQL the row lock serializes concurrent
   claims on the same pool, the loser re-evaluates the predicate and gets 0 rows;
2. compare-and-swap of one ``available`` unit to ``claimed``
   (``FOR UPDATE SKIP LOCKED`` where supported);
3. the unique (recipient_id, condition_id) constraint on ``reward_units`` turns a
   duplicate claim for the same pair into an IntegrityError, which rolls the
   savepoint back and returns the winner's unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.delivery_record import DeliveryRecord
from app.models.reward_pool import RewardPool
from app.models.reward_unit import RewardUnit
from app.services.activity_logger import log_activity


logger = logging.getLogger(__name__)

# Attempts at swapping a candidate unit before giving up (another claim may
# take the candidate between the select and the swap when SKIP LOCKED is
# unavailable).
_MAX_SWAP_ATTEMPTS = 5


class InsufficientInventory(Exception):
    def __init__(self, pool_id, reason: str = "pool exhausted"):
        super().__init__(f"{reason}: {pool_id}")
        self.pool_id = pool_id
        self.reason = reason


@dataclass
class ClaimResult:
    unit: RewardUnit
    pool: RewardPool
    already_assigned: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _find_binding(db: Session, recipient_id, condition_id) -> RewardUnit | None:
    if condition_id is None:
        return None
    return (
        db.query(RewardUnit)
        .populate_existing()
        .filter(RewardUnit.recipient_id == recipient_id)
        .filter(RewardUnit.condition_id == condition_id)
        .first()
    )


def _get_pool(db: Session, pool_id) -> RewardPool | None:
    return db.query(RewardPool).populate_existing().filter(RewardPool.id == pool_id).first()


def _take_available_unit(
    db: Session,
    *,
    pool_id,
    recipient_id,
    campaign_id,
    condition_id,
    now: datetime,
) -> RewardUnit | None:
    for _ in range(_MAX_SWAP_ATTEMPTS):
        candidate_id = db.execute(
            select(RewardUnit.id)
            .where(RewardUnit.pool_id == pool_id)
            .where(RewardUnit.status == "available")
            .order_by(RewardUnit.created_at.asc(), RewardUnit.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar()

        if candidate_id is None:
            return None

        swapped = db.execute(
            update(RewardUnit)
            .where(RewardUnit.id == candidate_id)
            .where(RewardUnit.status == "available")
            .values(
                status="claimed",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                condition_id=condition_id,
                claimed_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount

        if swapped:
            return db.query(RewardUnit).populate_existing().filter(RewardUnit.id == candidate_id).one()

    return None


def _signal_stock_level(db: Session, pool: RewardPool) -> None:
    if pool.available_count > (pool.low_stock_threshold or 0):
        return

    event_type = "pool_exhausted" if pool.available_count == 0 else "pool_low_stock"
    logger.warning(
        "reward pool stock low",
        extra={
            "pool_id": str(pool.id),
            "available_count": pool.available_count,
            "low_stock_threshold": pool.low_stock_threshold,
        },
    )
    log_activity(
        db,
        category="gift_card",
        event_type=event_type,
        status="success",
        severity="warning",
        details={
            "poolId": pool.id,
            "availableCount": pool.available_count,
            "lowStockThreshold": pool.low_stock_threshold,
        },
    )


# ============================================================
# CLAIM
# ============================================================
def claim_reward_unit(
    db: Session,
    pool_id,
    recipient_id,
    *,
    campaign_id=None,
    condition_id=None,
    now: datetime | None = None,
) -> ClaimResult:
    """
    Claims one unit of ``pool_id`` for ``recipient_id``.

    Idempotent per (recipient_id, condition_id): an existing binding is returned
    with ``already_assigned=True`` and the pool is left untouched. Raises
    InsufficientInventory when the pool is inactive, unknown or empty. The
    caller owns the outer transaction and must commit.
    """
    if now is None:
        now = _utcnow()

    existing = _find_binding(db, recipient_id, condition_id)
    if existing:
        return ClaimResult(unit=existing, pool=_get_pool(db, existing.pool_id), already_assigned=True)

    pool = _get_pool(db, pool_id)
    if not pool or not pool.active:
        raise InsufficientInventory(pool_id, reason="pool not found or inactive")

    try:
        with db.begin_nested():
            decremented = db.execute(
                update(RewardPool)
                .where(RewardPool.id == pool_id)
                .where(RewardPool.active.is_(True))
                .where(RewardPool.available_count > 0)
                .values(
                    available_count=RewardPool.available_count - 1,
                    claimed_count=RewardPool.claimed_count + 1,
                )
                .execution_options(synchronize_session=False)
            ).rowcount

            if not decremented:
                raise InsufficientInventory(pool_id)

            unit = _take_available_unit(
                db,
                pool_id=pool_id,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                condition_id=condition_id,
                now=now,
            )
            if unit is None:
                # Counter said yes but no unit row is available; the savepoint
                # rollback restores the counter.
                logger.error("reward pool counter drift", extra={"pool_id": str(pool_id)})
                raise InsufficientInventory(pool_id, reason="pool counter out of sync with units")

    except IntegrityError:
        winner = _find_binding(db, recipient_id, condition_id)
        if winner is None:
            raise
        logger.info(
            "concurrent claim lost to existing binding",
            extra={"recipient_id": str(recipient_id), "condition_id": str(condition_id)},
        )
        return ClaimResult(unit=winner, pool=_get_pool(db, winner.pool_id), already_assigned=True)

    pool = _get_pool(db, pool_id)

    logger.info(
        "reward unit claimed",
        extra={
            "pool_id": str(pool_id),
            "unit_id": str(unit.id),
            "recipient_id": str(recipient_id),
            "available_count": pool.available_count,
        },
    )
    _signal_stock_level(db, pool)

    return ClaimResult(unit=unit, pool=pool, already_assigned=False)


# ============================================================
# DELIVERED
# ============================================================
def mark_unit_delivered(db: Session, unit_id, *, now: datetime | None = None) -> bool:
    if now is None:
        now = _utcnow()

    swapped = db.execute(
        update(RewardUnit)
        .where(RewardUnit.id == unit_id)
        .where(RewardUnit.status == "claimed")
        .values(status="delivered", delivered_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not swapped:
        return False

    pool_id = db.execute(select(RewardUnit.pool_id).where(RewardUnit.id == unit_id)).scalar()
    db.execute(
        update(RewardPool)
        .where(RewardPool.id == pool_id)
        .values(delivered_count=RewardPool.delivered_count + 1)
        .execution_options(synchronize_session=False)
    )
    return True


# ============================================================
# STOCK
# ============================================================
def add_units(db: Session, pool_id, codes: list[str]) -> int:
    seen = set()
    cleaned = []
    for raw in codes or []:
        code = (raw or "").strip()
        if not code or code in seen:
            continue
        seen.add(code)
        cleaned.append(code)

    if not cleaned:
        return 0

    for code in cleaned:
        db.add(RewardUnit(pool_id=pool_id, code=code, status="available"))
    db.flush()

    db.execute(
        update(RewardPool)
        .where(RewardPool.id == pool_id)
        .values(
            available_count=RewardPool.available_count + len(cleaned),
            total_count=RewardPool.total_count + len(cleaned),
        )
        .execution_options(synchronize_session=False)
    )
    return len(cleaned)


# ============================================================
# OPERATOR RECONCILIATION
# ============================================================
def list_stranded_units(db: Session, *, pool_id=None, max_retries: int = 3):
    """
    Claimed units whose delivery failed for good. They stay spent until an
    operator releases them.
    """
    q = (
        db.query(RewardUnit, DeliveryRecord)
        .join(DeliveryRecord, DeliveryRecord.reward_unit_id == RewardUnit.id)
        .filter(RewardUnit.status == "claimed")
        .filter(DeliveryRecord.delivery_status == "failed")
        .filter((DeliveryRecord.retryable.is_(False)) | (DeliveryRecord.retry_count >= max_retries))
    )
    if pool_id is not None:
        q = q.filter(RewardUnit.pool_id == pool_id)
    return q.order_by(RewardUnit.claimed_at.asc()).all()


def release_unit(db: Session, unit_id, *, reason: str | None = None, now: datetime | None = None) -> RewardUnit | None:
    """
    Retires a claimed, undelivered unit and restocks its code as a new
    available unit. The original row keeps its (recipient, condition) binding
    with status ``returned``. Returns the restocked unit, or None when the unit
    is not in ``claimed`` state.
    """
    if now is None:
        now = _utcnow()

    unit = db.query(RewardUnit).populate_existing().filter(RewardUnit.id == unit_id).first()
    if not unit:
        return None

    swapped = db.execute(
        update(RewardUnit)
        .where(RewardUnit.id == unit_id)
        .where(RewardUnit.status == "claimed")
        .values(status="returned", returned_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not swapped:
        return None

    restocked = RewardUnit(pool_id=unit.pool_id, code=unit.code, status="available")
    db.add(restocked)
    db.flush()

    db.execute(
        update(RewardPool)
        .where(RewardPool.id == unit.pool_id)
        .values(
            available_count=RewardPool.available_count + 1,
            claimed_count=RewardPool.claimed_count - 1,
        )
        .execution_options(synchronize_session=False)
    )

    log_activity(
        db,
        category="gift_card",
        event_type="card_released",
        severity="warning",
        recipient_id=unit.recipient_id,
        campaign_id=unit.campaign_id,
        details={"unitId": unit.id, "restockedUnitId": restocked.id, "poolId": unit.pool_id, "reason": reason},
    )
    db.refresh(unit)
    return restocked
