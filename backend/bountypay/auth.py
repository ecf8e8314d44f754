from __future__ import annotations

from flask import jsonify

from bountypay.errors import Unauthorized
from bountypay.extensions import db, login_manager
from bountypay.jwt_utils import bearer_token, user_id_from_token
from bountypay.models import User


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Resolve ``Authorization: Bearer <jwt>`` to a User for @login_required."""
    token = bearer_token(req.headers.get("Authorization"))
    user_id = user_id_from_token(token) if token else None
    return db.session.get(User, user_id) if user_id else None


@login_manager.unauthorized_handler
def _unauthorized():
    e = Unauthorized("Authentication required")
    return jsonify(e.to_dict()), e.status_code
