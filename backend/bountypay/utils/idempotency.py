"""Exactly-once guard for client requests and provider events.

A key is claimed by inserting its row; the unique constraint on
``idempotency_keys.key`` makes the claim atomic across workers. A finished
call stores its response on the row so a retry with the same key gets the
original answer instead of a second execution.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from flask import current_app, request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bountypay.errors import Conflict, ExternalServiceError
from bountypay.extensions import db
from bountypay.models import IdempotencyKey


@dataclass
class Claim:
    claimed: bool
    record: IdempotencyKey | None = None


def _hash_request(payload: Any) -> str:
    if payload is None:
        return ""
    try:
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    except (TypeError, ValueError):
        raw = str(payload).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k or not k.strip():
        return None
    return k.strip()[:128]


def scoped_key(scope: str, user_id, client_key: str | None) -> str | None:
    """Namespace a client key so two users (or two routes) never collide."""
    if not client_key:
        return None
    return f"api:{scope}:{int(user_id)}:{client_key}"[:255]


def _ttl() -> int:
    return int(current_app.config.get("IDEMPOTENCY_TTL_SECONDS") or 86400)


def _insert(key: str, user_id, route: str, request_hash: str, ttl_seconds: int) -> IdempotencyKey:
    now = datetime.utcnow()
    row = IdempotencyKey(
        key=key,
        user_id=int(user_id) if user_id is not None else None,
        route=route[:128],
        request_hash=request_hash,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    db.session.add(row)
    db.session.commit()
    return row


def claim(key: str, *, user_id=None, route: str = "", request_hash: str = "", ttl_seconds: int | None = None) -> Claim:
    """Atomically claim ``key``. Raises ExternalServiceError if the store is unreachable.

    Unavailability fails closed: a caller that cannot prove it is first must not act.
    """
    ttl = int(ttl_seconds or _ttl())
    try:
        try:
            return Claim(True, _insert(key, user_id, route, request_hash, ttl))
        except IntegrityError:
            db.session.rollback()

        # Taken. An expired claim may be reclaimed once; the delete is conditional
        # so two reclaimers cannot both remove a fresh row.
        removed = (
            IdempotencyKey.query
            .filter(IdempotencyKey.key == key, IdempotencyKey.expires_at <= datetime.utcnow())
            .delete(synchronize_session=False)
        )
        db.session.commit()
        if removed:
            try:
                return Claim(True, _insert(key, user_id, route, request_hash, ttl))
            except IntegrityError:
                db.session.rollback()

        return Claim(False, IdempotencyKey.query.filter_by(key=key).first())
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error("idempotency claim failed key=%s err=%s", key, e)
        raise ExternalServiceError("idempotency-store", "Idempotency store unavailable") from e


def is_claimed(key: str) -> bool:
    """Read-only check. Fails open: an unreachable store reports the key as free."""
    try:
        row = IdempotencyKey.query.filter_by(key=key).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("idempotency lookup failed key=%s err=%s", key, e)
        return False
    return row is not None and not row.is_expired()


def release(key: str) -> bool:
    """Drop a claim so the operation can be retried. Best effort; the TTL is the backstop."""
    try:
        removed = IdempotencyKey.query.filter_by(key=key).delete(synchronize_session=False)
        db.session.commit()
        return bool(removed)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error("idempotency release failed key=%s err=%s", key, e)
        return False


def complete(key: str, response: Any, status_code: int = 200) -> None:
    row = IdempotencyKey.query.filter_by(key=key).first()
    if not row:
        return
    row.response_json = json.dumps(response, default=str)
    row.status_code = int(status_code)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error("idempotency complete failed key=%s err=%s", key, e)


def purge_expired_keys(now: datetime | None = None) -> int:
    try:
        n = (
            IdempotencyKey.query
            .filter(IdempotencyKey.expires_at <= (now or datetime.utcnow()))
            .delete(synchronize_session=False)
        )
        db.session.commit()
        return int(n or 0)
    except SQLAlchemyError:
        db.session.rollback()
        raise


def run_once(key: str | None, fn: Callable[[], dict], *, user_id=None, route: str = "", payload: Any = None, status_code: int = 200) -> dict:
    """Run ``fn`` at most once per key and replay its stored result afterwards.

    Without a key the call simply runs. The same key with a different payload,
    or a key whose first call is still in flight, is a Conflict. A failed call
    releases the key so the client may retry.
    """
    if not key:
        return fn()

    rh = _hash_request(payload)
    c = claim(key, user_id=user_id, route=route, request_hash=rh)
    if not c.claimed:
        row = c.record
        if row is None:
            # Vanished between the failed insert and the read: someone released it.
            raise Conflict("Request is being retried concurrently; try again")
        if not row.matches(rh):
            raise Conflict("Idempotency key reuse with different payload")
        if not row.completed:
            raise Conflict("A request with this idempotency key is already in progress")
        current_app.logger.info("idempotent replay key=%s route=%s", key, row.route)
        return row.response

    try:
        result = fn()
    except Exception:
        release(key)
        raise
    complete(key, result, status_code)
    return result
