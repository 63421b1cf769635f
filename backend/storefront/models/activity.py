from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ActivityLog(db.Model):
    """
    Append-only activity log.

    One row per committed state change. Rows are written after the domain
    transaction commits and are never updated or deleted by the engine.
    """
    __tablename__ = "activity_log"
    __table_args__ = (
        db.Index("ix_activity_log_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(100), nullable=False)
    performed_by = db.Column(db.String(150), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
