from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.delivery import RetrySweepRequest
from app.services.delivery_retry_scheduler import resume_stalled_fulfillments, sweep_failed_deliveries


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/deliveries/retry-sweep")
def admin_retry_sweep(payload: RetrySweepRequest | None = None, db: Session = Depends(get_db)):
    payload = payload or RetrySweepRequest()

    stalled = None
    if payload.include_stalled:
        stalled = resume_stalled_fulfillments(db, batch_size=payload.batch_size)

    retried = sweep_failed_deliveries(db, batch_size=payload.batch_size, max_retries=payload.max_retries)
    return {
        "retry": retried.as_dict(),
        "stalled": stalled.as_dict() if stalled else None,
    }
