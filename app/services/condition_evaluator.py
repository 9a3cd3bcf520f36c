"""
Ordered, idempotent condition completion.

A campaign defines conditions 1..N (``sequence_order``). An incoming event
completes the lowest-ordered condition of its type that the recipient has not
completed yet, provided every earlier required condition is completed. A
condition blocked by its prerequisites keeps a ``pending`` status row and is
completed automatically once the prerequisites are met (cascade).

Completion is one conditional UPDATE (``status <> 'completed'``): only the
writer that flips the row reports ``newly_completed`` and dispatches
fulfillment, so duplicate or concurrent events never fire twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.campaign_condition import CONDITION_TYPES, TRIGGER_ACTIONS, CampaignCondition
from app.models.recipient_condition_status import RecipientConditionStatus
from app.services.activity_logger import log_activity
from app.services.fulfillment_orchestrator import fulfill_condition, open_delivery_record


logger = logging.getLogger(__name__)

OUTCOME_NO_CONDITIONS = "no_conditions"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_ALREADY_COMPLETED = "already_completed"
OUTCOME_PREREQUISITES_PENDING = "prerequisites_pending"
OUTCOME_COMPLETED = "completed"
OUTCOME_CONFIG_ERROR = "config_error"
OUTCOME_ERROR = "error"


@dataclass
class EvaluationResult:
    outcome: str
    matched: bool = False
    newly_completed: bool = False
    condition_id: object = None
    sequence_order: int | None = None
    trigger_action: str | None = None
    config_errors: list = field(default_factory=list)
    cascaded: list = field(default_factory=list)
    fulfillment: dict | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "matched": self.matched,
            "newlyCompleted": self.newly_completed,
            "conditionId": str(self.condition_id) if self.condition_id else None,
            "sequenceOrder": self.sequence_order,
            "triggerAction": self.trigger_action,
            "configErrors": self.config_errors,
            "cascaded": [c.as_dict() for c in self.cascaded],
            "fulfillment": self.fulfillment,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def config_error_for(condition: CampaignCondition) -> str | None:
    if condition.condition_type not in CONDITION_TYPES:
        return f"unknown condition type: {condition.condition_type}"
    if condition.trigger_action not in TRIGGER_ACTIONS:
        return f"unknown trigger action: {condition.trigger_action}"
    return None


def _load_conditions(db: Session, campaign_id) -> list[CampaignCondition]:
    return (
        db.query(CampaignCondition)
        .filter(CampaignCondition.campaign_id == campaign_id)
        .filter(CampaignCondition.is_active.is_(True))
        .order_by(CampaignCondition.sequence_order.asc())
        .all()
    )


def _status_rows(db: Session, recipient_id, campaign_id) -> dict:
    rows = (
        db.query(RecipientConditionStatus)
        .populate_existing()
        .filter(RecipientConditionStatus.recipient_id == recipient_id)
        .filter(RecipientConditionStatus.campaign_id == campaign_id)
        .all()
    )
    return {row.condition_id: row for row in rows}


def prerequisites_met(conditions: list[CampaignCondition], target: CampaignCondition, completed_ids: set, broken_ids: set) -> bool:
    """
    True when every active, well-formed, required condition ordered before
    ``target`` is completed. ``conditions`` must be sorted by sequence_order.
    """
    for condition in conditions:
        if condition.sequence_order >= target.sequence_order:
            break
        if not condition.is_required or condition.id in broken_ids:
            continue
        if condition.id not in completed_ids:
            return False
    return True


def _ensure_status_row(db: Session, *, recipient_id, campaign_id, condition_id, metadata) -> None:
    exists = (
        db.query(RecipientConditionStatus.id)
        .filter(RecipientConditionStatus.recipient_id == recipient_id)
        .filter(RecipientConditionStatus.condition_id == condition_id)
        .first()
    )
    if exists:
        return

    try:
        with db.begin_nested():
            db.add(
                RecipientConditionStatus(
                    recipient_id=recipient_id,
                    campaign_id=campaign_id,
                    condition_id=condition_id,
                    status="pending",
                    meta=metadata,
                )
            )
            db.flush()
    except IntegrityError:
        # a concurrent event created it first
        pass


def _mark_completed(db: Session, *, recipient_id, condition_id, metadata, now: datetime) -> bool:
    values = {"status": "completed", "completed_at": now}
    if metadata is not None:
        values["meta"] = metadata

    flipped = db.execute(
        update(RecipientConditionStatus)
        .where(RecipientConditionStatus.recipient_id == recipient_id)
        .where(RecipientConditionStatus.condition_id == condition_id)
        .where(RecipientConditionStatus.status != "completed")
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    return flipped == 1


def _dispatch(db: Session, dispatch, recipient_id, condition: CampaignCondition, now: datetime) -> dict | None:
    try:
        if dispatch is None:
            return fulfill_condition(db, recipient_id, condition.id, now=now).as_dict()
        return dispatch(db, recipient_id, condition)
    except Exception as e:
        db.rollback()
        logger.exception(
            "fulfillment dispatch failed",
            extra={"recipient_id": str(recipient_id), "condition_id": str(condition.id)},
        )
        return {"status": "dispatch_failed", "reason": str(e)}


def _complete(
    db: Session,
    *,
    recipient_id,
    campaign_id,
    condition: CampaignCondition,
    metadata,
    now: datetime,
    dispatch,
    cascaded: bool = False,
) -> EvaluationResult:
    flipped = _mark_completed(db, recipient_id=recipient_id, condition_id=condition.id, metadata=metadata, now=now)
    if not flipped:
        db.commit()
        logger.info(
            "condition already completed",
            extra={"recipient_id": str(recipient_id), "condition_id": str(condition.id)},
        )
        return EvaluationResult(
            outcome=OUTCOME_ALREADY_COMPLETED,
            matched=True,
            condition_id=condition.id,
            sequence_order=condition.sequence_order,
            trigger_action=condition.trigger_action,
        )

    log_activity(
        db,
        category="campaign",
        event_type="condition_completed",
        recipient_id=recipient_id,
        campaign_id=campaign_id,
        details={
            "conditionId": condition.id,
            "sequenceOrder": condition.sequence_order,
            "conditionType": condition.condition_type,
            "triggerAction": condition.trigger_action,
            "cascaded": cascaded,
        },
    )
    # the delivery record commits with the completion so a lost dispatch is
    # recovered by the stalled-fulfillment sweep
    open_delivery_record(db, recipient_id, condition, now=now)
    db.commit()

    logger.info(
        "condition completed",
        extra={
            "recipient_id": str(recipient_id),
            "condition_id": str(condition.id),
            "sequence_order": condition.sequence_order,
            "cascaded": cascaded,
        },
    )

    return EvaluationResult(
        outcome=OUTCOME_COMPLETED,
        matched=True,
        newly_completed=True,
        condition_id=condition.id,
        sequence_order=condition.sequence_order,
        trigger_action=condition.trigger_action,
        fulfillment=_dispatch(db, dispatch, recipient_id, condition, now),
    )


def _cascade(
    db: Session,
    *,
    recipient_id,
    campaign_id,
    conditions: list[CampaignCondition],
    broken_ids: set,
    now: datetime,
    dispatch,
) -> list[EvaluationResult]:
    rows = _status_rows(db, recipient_id, campaign_id)
    completed_ids = {cid for cid, row in rows.items() if row.status == "completed"}

    results = []
    for condition in conditions:
        row = rows.get(condition.id)
        if row is None or row.status != "pending" or condition.id in broken_ids:
            continue
        if not prerequisites_met(conditions, condition, completed_ids, broken_ids):
            continue

        result = _complete(
            db,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            condition=condition,
            metadata=None,
            now=now,
            dispatch=dispatch,
            cascaded=True,
        )
        completed_ids.add(condition.id)
        if result.newly_completed:
            results.append(result)
    return results


def _evaluate(db: Session, recipient_id, campaign_id, event_type: str, metadata, *, now: datetime, dispatch) -> EvaluationResult:
    conditions = _load_conditions(db, campaign_id)
    if not conditions:
        logger.info("no active conditions for campaign", extra={"campaign_id": str(campaign_id)})
        return EvaluationResult(outcome=OUTCOME_NO_CONDITIONS)

    config_errors = []
    broken_ids = set()
    for condition in conditions:
        problem = config_error_for(condition)
        if problem:
            broken_ids.add(condition.id)
            config_errors.append({"conditionId": str(condition.id), "sequenceOrder": condition.sequence_order, "error": problem})

    if config_errors:
        logger.warning(
            "campaign has malformed conditions",
            extra={"campaign_id": str(campaign_id), "config_errors": config_errors},
        )

    candidates = [c for c in conditions if c.condition_type == event_type]
    if not candidates:
        logger.info(
            "no condition matches event",
            extra={"campaign_id": str(campaign_id), "event_type": event_type},
        )
        return EvaluationResult(outcome=OUTCOME_NO_MATCH, config_errors=config_errors)

    usable = [c for c in candidates if c.id not in broken_ids]
    if not usable:
        return EvaluationResult(outcome=OUTCOME_CONFIG_ERROR, config_errors=config_errors)

    rows = _status_rows(db, recipient_id, campaign_id)
    completed_ids = {cid for cid, row in rows.items() if row.status == "completed"}

    target = next((c for c in usable if c.id not in completed_ids), None)
    if target is None:
        logger.info(
            "event matches only completed conditions",
            extra={"recipient_id": str(recipient_id), "event_type": event_type},
        )
        return EvaluationResult(
            outcome=OUTCOME_ALREADY_COMPLETED,
            matched=True,
            condition_id=usable[-1].id,
            sequence_order=usable[-1].sequence_order,
            trigger_action=usable[-1].trigger_action,
            config_errors=config_errors,
        )

    _ensure_status_row(
        db,
        recipient_id=recipient_id,
        campaign_id=campaign_id,
        condition_id=target.id,
        metadata=metadata,
    )

    if not prerequisites_met(conditions, target, completed_ids, broken_ids):
        db.commit()

        # a prerequisite may have completed and cascaded before this row was visible
        completed_ids = {cid for cid, row in _status_rows(db, recipient_id, campaign_id).items() if row.status == "completed"}

    if not prerequisites_met(conditions, target, completed_ids, broken_ids):
        db.commit()
        logger.info(
            "condition waiting on prerequisites",
            extra={
                "recipient_id": str(recipient_id),
                "condition_id": str(target.id),
                "sequence_order": target.sequence_order,
            },
        )
        return EvaluationResult(
            outcome=OUTCOME_PREREQUISITES_PENDING,
            matched=True,
            condition_id=target.id,
            sequence_order=target.sequence_order,
            trigger_action=target.trigger_action,
            config_errors=config_errors,
        )

    result = _complete(
        db,
        recipient_id=recipient_id,
        campaign_id=campaign_id,
        condition=target,
        metadata=metadata,
        now=now,
        dispatch=dispatch,
    )
    result.config_errors = config_errors

    if result.newly_completed:
        result.cascaded = _cascade(
            db,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            conditions=conditions,
            broken_ids=broken_ids,
            now=now,
            dispatch=dispatch,
        )
    return result


def evaluate_condition(
    db: Session,
    recipient_id,
    campaign_id,
    event_type: str,
    metadata: dict | None = None,
    *,
    now: datetime | None = None,
    dispatch=None,
) -> EvaluationResult:
    """
    Evaluates one inbound event for a recipient.

    ``dispatch(db, recipient_id, condition)`` is called once per newly
    completed condition; it defaults to running fulfillment inline. Pass a
    no-op to only record completions (the HTTP layer schedules fulfillment as
    a background task instead). Reward actions get their ``evaluated``
    delivery record in the completing transaction either way. Never raises.
    """
    if now is None:
        now = _utcnow()

    try:
        return _evaluate(db, recipient_id, campaign_id, event_type, metadata, now=now, dispatch=dispatch)
    except Exception as e:
        db.rollback()
        logger.exception(
            "condition evaluation failed",
            extra={"recipient_id": str(recipient_id), "campaign_id": str(campaign_id), "event_type": event_type},
        )
        return EvaluationResult(outcome=OUTCOME_ERROR, error=str(e))


def deactivate_condition(db: Session, condition_id) -> CampaignCondition | None:
    condition = db.query(CampaignCondition).filter(CampaignCondition.id == condition_id).first()
    if not condition:
        return None
    condition.is_active = False
    db.commit()
    db.refresh(condition)
    logger.info("condition deactivated", extra={"condition_id": str(condition_id)})
    return condition
