import json
from datetime import datetime

from bountypay.extensions import db


class IdempotencyKey(db.Model):
    """A claimed operation key.

    The unique index on ``key`` is the claim: whoever inserts the row owns the
    operation until it is released or ``expires_at`` passes. Once the owner
    finishes, ``response_json`` holds what it returned.
    """

    __tablename__ = "idempotency_keys"

    id = db.Column(db.Integer, primary_key=True)

    # Namespaced: api:<route>:<user>:<client key> or stripe-event:<event id>
    key = db.Column(db.String(255), nullable=False, unique=True)
    user_id = db.Column(db.Integer, nullable=True)
    route = db.Column(db.String(128), nullable=False, default="")
    request_hash = db.Column(db.String(64), nullable=False, default="")

    response_json = db.Column(db.Text, nullable=True)
    status_code = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    @property
    def completed(self) -> bool:
        return self.response_json is not None

    @property
    def response(self):
        return json.loads(self.response_json) if self.response_json is not None else None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at

    def matches(self, request_hash: str) -> bool:
        # Rows claimed without a payload (provider events) match anything.
        return not self.request_hash or not request_hash or self.request_hash == request_hash
