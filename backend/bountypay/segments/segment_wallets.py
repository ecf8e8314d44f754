from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from bountypay import payouts
from bountypay.models import PayoutRequest
from bountypay.models.wallet_txn import TXN_KINDS
from bountypay.errors import ValidationError
from bountypay.utils.idempotency import get_idempotency_key
from bountypay.utils.ledger import list_entries
from bountypay.utils.reserves import balance_summary

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


@wallets_bp.get("/balance")
@login_required
def balance():
    return jsonify({"ok": True, **balance_summary(int(current_user.id))}), 200


@wallets_bp.get("/transactions")
@login_required
def transactions():
    kind = (request.args.get("kind") or "").strip() or None
    if kind and kind not in TXN_KINDS:
        raise ValidationError(f"Unknown kind: {kind}")
    rows = list_entries(
        int(current_user.id),
        kind=kind,
        bounty_id=_int_arg("bounty_id", 0) or None,
        limit=_int_arg("limit", 50),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@wallets_bp.post("/withdraw")
@login_required
def withdraw():
    data = request.get_json(silent=True) or {}
    result = payouts.withdraw(int(current_user.id), data.get("amount"), idempotency_key=get_idempotency_key())
    return jsonify(result), 201


@wallets_bp.get("/payouts")
@login_required
def my_payouts():
    rows = (
        PayoutRequest.query.filter_by(user_id=int(current_user.id))
        .order_by(PayoutRequest.created_at.desc())
        .limit(100)
        .all()
    )
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
