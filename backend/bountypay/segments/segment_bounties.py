from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from bountypay import escrow
from bountypay.errors import ValidationError
from bountypay.extensions import db
from bountypay.models import Bounty
from bountypay.utils.idempotency import get_idempotency_key
from bountypay.utils.money import parse_amount

bounties_bp = Blueprint("bounties_bp", __name__, url_prefix="/api/bounties")


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@bounties_bp.post("")
@login_required
def create_bounty():
    data = _payload()
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required")
    is_for_honor = bool(data.get("is_for_honor"))
    amount = 0 if is_for_honor else parse_amount(data.get("amount"))

    b = Bounty(poster_id=int(current_user.id), title=title[:200], amount=amount, is_for_honor=is_for_honor)
    db.session.add(b)
    db.session.commit()
    return jsonify({"ok": True, "bounty": b.to_dict()}), 201


@bounties_bp.get("/<int:bounty_id>")
@login_required
def get_bounty(bounty_id: int):
    b = escrow.get_bounty(bounty_id)
    return jsonify({"ok": True, "bounty": b.to_dict()}), 200


@bounties_bp.post("/<int:bounty_id>/accept")
@login_required
def accept(bounty_id: int):
    return jsonify(escrow.accept_bounty(int(current_user.id), bounty_id)), 200


@bounties_bp.post("/<int:bounty_id>/escrow")
@login_required
def create_escrow(bounty_id: int):
    data = _payload()
    amount = data.get("amount")
    if amount is None:
        amount = escrow.get_bounty(bounty_id).amount
    result = escrow.create_escrow(
        int(current_user.id),
        bounty_id,
        amount,
        idempotency_key=get_idempotency_key(),
        payment_method=(data.get("payment_method") or "").strip() or None,
    )
    return jsonify(result), 201


@bounties_bp.post("/<int:bounty_id>/release")
@login_required
def release(bounty_id: int):
    result = escrow.release_escrow(int(current_user.id), bounty_id, idempotency_key=get_idempotency_key())
    return jsonify(result), 200


@bounties_bp.post("/<int:bounty_id>/refund")
@login_required
def refund(bounty_id: int):
    reason = (_payload().get("reason") or "").strip()
    result = escrow.refund_escrow(int(current_user.id), bounty_id, reason=reason, idempotency_key=get_idempotency_key())
    return jsonify(result), 200
