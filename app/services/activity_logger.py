"""
Audit trail for the fulfillment pipeline.

Rows land in ``activity_log`` and feed the operator status dashboard. Writing
an audit row must never break the main flow: the insert runs in a savepoint and
failures are only logged.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.activity_log import ActivityLog


logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def log_activity(
    db: Session,
    *,
    category: str,
    event_type: str,
    status: str = "success",
    severity: str = "info",
    recipient_id=None,
    campaign_id=None,
    delivery_record_id=None,
    details: dict | None = None,
) -> ActivityLog | None:
    entry = ActivityLog(
        category=category,
        event_type=event_type,
        status=status,
        severity=severity,
        recipient_id=recipient_id,
        campaign_id=campaign_id,
        delivery_record_id=delivery_record_id,
        details=_jsonable(details or {}),
    )

    try:
        with db.begin_nested():
            db.add(entry)
            db.flush()
    except SQLAlchemyError:
        logger.exception(
            "failed to write activity log",
            extra={"category": category, "event_type": event_type},
        )
        return None

    return entry
