from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from bountypay import payouts
from bountypay.models import ConnectAccount

connect_bp = Blueprint("connect_bp", __name__, url_prefix="/api/connect")


@connect_bp.get("/account")
@login_required
def get_account():
    row = ConnectAccount.query.filter_by(user_id=int(current_user.id)).first()
    return jsonify({"ok": True, "account": row.to_dict() if row else None}), 200


@connect_bp.post("/account")
@login_required
def register_account():
    data = request.get_json(silent=True) or {}
    result = payouts.register_connect_account(int(current_user.id), data.get("account_id") or "")
    return jsonify(result), 200


@connect_bp.post("/account/refresh")
@login_required
def refresh_account():
    return jsonify(payouts.sync_connect_account(int(current_user.id))), 200
