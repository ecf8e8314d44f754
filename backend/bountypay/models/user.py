from datetime import datetime
from flask_login import UserMixin

from bountypay.extensions import db


RISK_LEVELS = ("low", "medium", "high", "critical")


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    # user | admin | platform
    role = db.Column(db.String(32), nullable=False, default="user")

    # Drives the balance holdback, see utils/reserves.py
    risk_level = db.Column(db.String(16), nullable=False, default="low")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role or "user",
            "risk_level": self.risk_level or "low",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
