import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from app.db import SessionLocal, get_db
from app.schemas.condition import ConditionEvaluationOut, ConditionEvent
from app.services.condition_evaluator import evaluate_condition
from app.services.fulfillment_orchestrator import fulfill_condition
from app.services.tenant_service import get_campaign, get_recipient


logger = logging.getLogger(__name__)

router = APIRouter(tags=["conditions"])


def run_fulfillment(recipient_id, condition_ids: list):
    db = SessionLocal()
    try:
        for condition_id in condition_ids:
            outcome = fulfill_condition(db, recipient_id, condition_id)
            logger.info(
                "background fulfillment finished",
                extra={
                    "recipient_id": str(recipient_id),
                    "condition_id": str(condition_id),
                    "status": outcome.status,
                    "reason": outcome.reason,
                },
            )
    finally:
        db.close()


@router.post("/conditions/evaluate", response_model=ConditionEvaluationOut)
def evaluate(payload: ConditionEvent, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    campaign = get_campaign(db, payload.campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    recipient = get_recipient(db, payload.recipient_id)
    if not recipient or recipient.campaign_id != campaign.id:
        raise HTTPException(status_code=404, detail="Recipient not found in campaign")

    completed = []

    def schedule(_db, recipient_id, condition):
        completed.append(condition.id)
        return {"status": "scheduled"}

    result = evaluate_condition(
        db,
        payload.recipient_id,
        payload.campaign_id,
        payload.event_type,
        payload.metadata,
        dispatch=schedule,
    )

    # completions are already committed; this only closes the read transaction
    db.commit()

    if completed:
        background_tasks.add_task(run_fulfillment, payload.recipient_id, completed)

    return result.as_dict()
