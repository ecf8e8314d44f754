import json
from datetime import datetime

from sqlalchemy import event

from bountypay.extensions import db


TXN_KINDS = ("deposit", "withdrawal", "escrow_hold", "release", "refund", "platform_fee")
TXN_STATUSES = ("pending", "completed", "failed")


class LedgerImmutableError(RuntimeError):
    pass


class WalletTxn(db.Model):
    """One immutable ledger line. Credits are positive, debits negative."""

    __tablename__ = "wallet_txns"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    bounty_id = db.Column(db.Integer, db.ForeignKey("bounties.id"), nullable=True, index=True)

    kind = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="completed")

    # Provider transfer / charge / intent id
    external_reference = db.Column(db.String(128), nullable=True, index=True)
    idempotency_key = db.Column(db.String(160), nullable=False, unique=True, index=True)

    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @property
    def metadata_dict(self) -> dict:
        if not self.meta:
            return {}
        try:
            return json.loads(self.meta)
        except ValueError:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "bounty_id": int(self.bounty_id) if self.bounty_id else None,
            "type": self.kind,
            "amount": int(self.amount),
            "status": self.status,
            "external_reference": self.external_reference,
            "metadata": self.metadata_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(WalletTxn, "before_update")
def _refuse_update(mapper, connection, target):
    raise LedgerImmutableError(f"wallet_txns row {target.id} is append-only")
