from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app import config
from app.db import get_db
from app.deps.tenant import get_active_client
from app.models.reward_pool import RewardPool
from app.models.reward_unit import RewardUnit
from app.schemas.reward_pool import (
    RewardPoolCreate,
    RewardPoolOut,
    RewardUnitOut,
    RewardUnitRelease,
    RewardUnitsAdd,
    StrandedUnitOut,
)
from app.services.inventory_allocator import add_units, list_stranded_units, release_unit
from app.services.tenant_service import get_client


router = APIRouter(tags=["reward-pools"])


def _pool_for_client(db: Session, pool_id: UUID, client_id: UUID) -> RewardPool:
    pool = db.query(RewardPool).filter(RewardPool.id == pool_id).first()
    if not pool or pool.client_id != client_id:
        raise HTTPException(status_code=404, detail="Reward pool not found")
    return pool


@router.get("/reward-pools", response_model=list[RewardPoolOut])
def list_pools(
    active: bool | None = None,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    q = db.query(RewardPool).filter(RewardPool.client_id == active_client)
    if active is not None:
        q = q.filter(RewardPool.active.is_(active))
    return q.order_by(RewardPool.created_at.desc()).all()


@router.post("/reward-pools", response_model=RewardPoolOut)
def create_pool(
    payload: RewardPoolCreate,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    if not get_client(db, active_client):
        raise HTTPException(status_code=404, detail="Client not found")

    pool = RewardPool(
        client_id=active_client,
        name=payload.name,
        brand=payload.brand,
        denomination=payload.denomination,
        cost_per_unit=payload.cost_per_unit,
        low_stock_threshold=payload.low_stock_threshold,
        active=payload.active,
        available_count=0,
        total_count=0,
        claimed_count=0,
        delivered_count=0,
    )
    db.add(pool)
    db.flush()
    add_units(db, pool.id, payload.codes)
    db.commit()
    db.refresh(pool)
    return pool


@router.get("/reward-pools/{pool_id}", response_model=RewardPoolOut)
def get_pool(
    pool_id: UUID,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    return _pool_for_client(db, pool_id, active_client)


@router.post("/reward-pools/{pool_id}/units")
def stock_pool(
    pool_id: UUID,
    payload: RewardUnitsAdd,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    _pool_for_client(db, pool_id, active_client)
    added = add_units(db, pool_id, payload.codes)
    db.commit()
    return {"added": added}


@router.get("/reward-pools/{pool_id}/stranded-units", response_model=list[StrandedUnitOut])
def stranded_units(
    pool_id: UUID,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    _pool_for_client(db, pool_id, active_client)
    rows = list_stranded_units(db, pool_id=pool_id, max_retries=config.DELIVERY_MAX_RETRIES)
    return [
        {
            "unit": unit,
            "delivery_record_id": record.id,
            "failure_reason": record.failure_reason,
            "retry_count": record.retry_count,
        }
        for unit, record in rows
    ]


@router.post("/reward-units/{unit_id}/release", response_model=RewardUnitOut)
def release(
    unit_id: UUID,
    payload: RewardUnitRelease | None = None,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    unit = db.query(RewardUnit).filter(RewardUnit.id == unit_id).first()
    if not unit:
        raise HTTPException(status_code=404, detail="Reward unit not found")
    _pool_for_client(db, unit.pool_id, active_client)

    restocked = release_unit(db, unit_id, reason=payload.reason if payload else None)
    if restocked is None:
        raise HTTPException(status_code=409, detail=f"Reward unit is {unit.status}, only claimed units can be released")
    db.commit()
    db.refresh(restocked)
    return restocked
