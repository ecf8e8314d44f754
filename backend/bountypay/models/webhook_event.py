from datetime import datetime

from bountypay.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="stripe")
    event_id = db.Column(db.String(128), nullable=False, unique=True)
    event_type = db.Column(db.String(64), nullable=False, default="")

    # Raw body as delivered, kept for audit and replay
    payload = db.Column(db.Text, nullable=False, default="{}")

    processed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "processed": bool(self.processed),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
