from datetime import datetime

from bountypay.extensions import db


BOUNTY_STATUSES = ("open", "in_progress", "completed", "cancelled", "archived")


class Bounty(db.Model):
    __tablename__ = "bounties"

    id = db.Column(db.Integer, primary_key=True)

    poster_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    hunter_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    title = db.Column(db.String(200), nullable=False, default="")

    # minor units (cents)
    amount = db.Column(db.Integer, nullable=False, default=0)
    is_for_honor = db.Column(db.Boolean, nullable=False, default=False)

    # open -> in_progress -> completed | cancelled; archived is terminal with no funds
    status = db.Column(db.String(16), nullable=False, default="open", index=True)

    # none -> held -> released | refunded
    escrow_state = db.Column(db.String(16), nullable=False, default="none")
    funding_source = db.Column(db.String(16), nullable=True)  # wallet | card

    # Provider intent id while a card-funded hold is outstanding
    payment_reference = db.Column(db.String(128), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "poster_id": int(self.poster_id),
            "hunter_id": int(self.hunter_id) if self.hunter_id else None,
            "title": self.title or "",
            "amount": int(self.amount or 0),
            "is_for_honor": bool(self.is_for_honor),
            "status": self.status,
            "escrow_state": self.escrow_state or "none",
            "funding_source": self.funding_source,
            "payment_reference": self.payment_reference,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
