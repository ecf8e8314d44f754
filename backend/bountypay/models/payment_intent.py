from datetime import datetime

from bountypay.extensions import db


class PaymentIntent(db.Model):
    __tablename__ = "payment_intents"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    bounty_id = db.Column(db.Integer, nullable=True, index=True)

    provider = db.Column(db.String(32), nullable=False, default="stripe")
    reference = db.Column(db.String(128), nullable=False, unique=True)
    purpose = db.Column(db.String(32), nullable=False, default="topup")  # topup | escrow
    amount = db.Column(db.Integer, nullable=False, default=0)

    # Mirror of the provider status: requires_capture|succeeded|canceled|failed|...
    status = db.Column(db.String(32), nullable=False, default="created")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "bounty_id": int(self.bounty_id) if self.bounty_id else None,
            "provider": self.provider,
            "reference": self.reference,
            "purpose": self.purpose,
            "amount": int(self.amount or 0),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
