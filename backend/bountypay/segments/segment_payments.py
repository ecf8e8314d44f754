from __future__ import annotations

import uuid

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from bountypay.extensions import db
from bountypay.models import PaymentIntent
from bountypay.utils import stripe_client
from bountypay.utils.idempotency import get_idempotency_key, run_once, scoped_key
from bountypay.utils.money import parse_amount

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


def _create_topup(user_id: int, amount: int, provider_key: str) -> dict:
    intent = stripe_client.create_charge(
        amount,
        metadata={"purpose": "topup", "user_id": user_id},
        idempotency_key=provider_key,
    )
    row = PaymentIntent.query.filter_by(reference=intent["intent_id"]).first()
    if not row:
        row = PaymentIntent(reference=intent["intent_id"], user_id=user_id, purpose="topup", amount=amount)
        db.session.add(row)
    row.status = intent.get("status") or "created"
    db.session.commit()
    # The wallet is credited by the payment_intent.succeeded webhook, not here.
    return {"ok": True, "intent": row.to_dict(), "client_secret": intent.get("client_secret", "")}


@payments_bp.post("/intents")
@login_required
def create_intent():
    data = request.get_json(silent=True) or {}
    user_id = int(current_user.id)
    amount = parse_amount(data.get("amount"))
    key = scoped_key("topup", user_id, get_idempotency_key())
    result = run_once(
        key,
        lambda: _create_topup(user_id, amount, key or f"topup:{user_id}:{uuid.uuid4().hex}"),
        user_id=user_id,
        route="create_topup",
        payload={"amount": amount},
        status_code=201,
    )
    return jsonify(result), 201
