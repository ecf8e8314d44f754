from datetime import datetime

from bountypay.extensions import db


class ConnectAccount(db.Model):
    """Payee record at the provider; payouts only go to accounts with payouts_enabled."""

    __tablename__ = "connect_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)

    provider = db.Column(db.String(32), nullable=False, default="stripe")
    external_account_id = db.Column(db.String(128), nullable=False, unique=True)

    payouts_enabled = db.Column(db.Boolean, nullable=False, default=False)
    details_submitted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "provider": self.provider,
            "external_account_id": self.external_account_id,
            "payouts_enabled": bool(self.payouts_enabled),
            "details_submitted": bool(self.details_submitted),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
