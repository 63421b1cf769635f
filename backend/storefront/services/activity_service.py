# Overview: Activity-log collaborator; records committed state changes.

"""
Activity log writer.

RULES:
- emit() is called only AFTER the domain transaction has committed.
- A failure here never fails the business operation that triggered it; it is
  logged with the stack trace and the session is rolled back.
- Payloads must be JSON-serializable; Decimals are stringified.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..config import get_setting
from ..extensions import db
from ..models import ActivityLog


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def emit(
    entity_type: str,
    entity_id: int,
    action: str,
    payload: dict | None = None,
    performed_by: str | None = None,
) -> ActivityLog | None:
    """Record one (entity_type, entity_id, action, payload) event."""
    if not get_setting("ACTIVITY_LOG_ENABLED"):
        return None

    try:
        entry = ActivityLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=performed_by or "system",
            payload=_jsonable(payload) if payload is not None else None,
        )
        db.session.add(entry)
        db.session.commit()
        return entry
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to write activity log entry %s/%s %s", entity_type, entity_id, action
        )
        return None


def list_activity(entity_type: str, entity_id: int, limit: int = 200) -> list[ActivityLog]:
    return (
        db.session.query(ActivityLog)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(ActivityLog.id.asc())
        .limit(limit)
        .all()
    )
