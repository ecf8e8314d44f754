from __future__ import annotations

import json

from flask import current_app, g, has_request_context
from sqlalchemy.exc import SQLAlchemyError

from bountypay.extensions import db
from bountypay.models import AuditLog


def record_audit(action: str, *, target_type: str = "", target_id: int | None = None, actor_user_id: int | None = None, meta: dict | None = None) -> None:
    request_id = getattr(g, "request_id", None) if has_request_context() else None
    try:
        db.session.add(AuditLog(
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            action=action[:64],
            target_type=(target_type or None),
            target_id=int(target_id) if target_id is not None else None,
            request_id=request_id,
            meta=json.dumps(meta or {}, default=str),
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("audit write failed action=%s target=%s:%s", action, target_type, target_id)
