import json
from datetime import datetime

from bountypay.extensions import db


class AuditLog(db.Model):
    """Append-only trail of money movements, compensations and reconciliation findings."""

    __tablename__ = "audit_logs"
    __table_args__ = (db.Index("ix_audit_logs_target", "target_type", "target_id"),)

    id = db.Column(db.Integer, primary_key=True)

    # None when the provider or a job acted
    actor_user_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    target_type = db.Column(db.String(32), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)

    request_id = db.Column(db.String(64), nullable=True)
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def meta_dict(self) -> dict:
        try:
            return json.loads(self.meta) if self.meta else {}
        except ValueError:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id else None,
            "action": self.action,
            "target": f"{self.target_type}:{self.target_id}" if self.target_type else None,
            "request_id": self.request_id,
            "meta": self.meta_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
