from datetime import datetime

from bountypay.extensions import db


class PayoutRequest(db.Model):
    __tablename__ = "payout_requests"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(24), nullable=False, default="pending")  # pending/paid/failed/unknown

    destination = db.Column(db.String(128), nullable=False)
    ledger_txn_id = db.Column(db.Integer, nullable=True)
    external_transfer_id = db.Column(db.String(128), nullable=True, unique=True)
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "amount": int(self.amount or 0),
            "status": self.status,
            "destination": self.destination,
            "ledger_txn_id": int(self.ledger_txn_id) if self.ledger_txn_id else None,
            "external_transfer_id": self.external_transfer_id,
            "failure_reason": self.failure_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
