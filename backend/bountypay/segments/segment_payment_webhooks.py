from __future__ import annotations

from flask import Blueprint, jsonify, request

from bountypay.webhooks import handle_stripe_webhook

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook():
    # Signature is over the exact bytes received, so read the raw body.
    raw = request.get_data(cache=False) or b""
    body, status = handle_stripe_webhook(raw, request.headers.get("Stripe-Signature"))
    return jsonify(body), status
