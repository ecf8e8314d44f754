from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bountypay.errors import Conflict, ExternalServiceError, ValidationError
from bountypay.extensions import db
from bountypay.models import User, WalletTxn


# Sign each entry kind carries on the ledger
SIGNS = {
    "deposit": 1,
    "release": 1,
    "refund": 1,
    "platform_fee": 1,
    "withdrawal": -1,
    "escrow_hold": -1,
}

SETTLEMENT_KINDS = ("release", "refund")


@dataclass
class Entry:
    user_id: int
    kind: str
    amount: int  # magnitude; the sign comes from the kind
    idempotency_key: str
    bounty_id: int | None = None
    external_reference: str | None = None
    status: str = "completed"
    meta: dict = field(default_factory=dict)


def hold_key(bounty_id) -> str:
    return f"hold:bounty:{int(bounty_id)}"


def settle_key(bounty_id) -> str:
    # Shared by release and refund: the unique index admits only one of them.
    return f"settle:bounty:{int(bounty_id)}"


def fee_key(bounty_id) -> str:
    return f"fee:bounty:{int(bounty_id)}"


def deposit_key(intent_id: str) -> str:
    return f"deposit:{intent_id}"


def platform_user_id() -> int:
    """Account that collects platform fees: ``PLATFORM_USER_ID``, else the ``platform`` role user."""
    raw = str(current_app.config.get("PLATFORM_USER_ID") or os.getenv("PLATFORM_USER_ID") or "").strip()
    if raw:
        if not raw.isdigit() or db.session.get(User, int(raw)) is None:
            raise ExternalServiceError("configuration", f"PLATFORM_USER_ID {raw!r} is not a known user")
        return int(raw)
    u = User.query.filter_by(role="platform").order_by(User.id.asc()).first()
    if not u:
        raise ExternalServiceError("configuration", "No platform account is configured to collect fees")
    return int(u.id)


def _row(e: Entry) -> WalletTxn:
    if e.kind not in SIGNS:
        raise ValidationError(f"Unknown ledger entry kind: {e.kind}")
    if int(e.amount) < 0:
        raise ValidationError("Ledger amounts are magnitudes; the kind sets the sign")
    return WalletTxn(
        user_id=int(e.user_id),
        bounty_id=int(e.bounty_id) if e.bounty_id else None,
        kind=e.kind,
        amount=SIGNS[e.kind] * int(e.amount),
        status=e.status,
        external_reference=e.external_reference,
        idempotency_key=e.idempotency_key[:160],
        meta=json.dumps(e.meta, default=str) if e.meta else None,
    )


def _existing(entries: list[Entry]) -> list[WalletTxn] | None:
    """Rows already written for these keys, or None when none were. Raises on a partial or foreign match."""
    keys = [e.idempotency_key[:160] for e in entries]
    rows = {r.idempotency_key: r for r in WalletTxn.query.filter(WalletTxn.idempotency_key.in_(keys)).all()}
    if not rows:
        return None
    out = []
    for e in entries:
        r = rows.get(e.idempotency_key[:160])
        if r is None or r.kind != e.kind or int(r.user_id) != int(e.user_id):
            raise Conflict(f"Ledger key {e.idempotency_key} already used by another entry")
        out.append(r)
    return out


def append_entries(entries: list[Entry]) -> list[WalletTxn]:
    """Write all entries in one transaction, or none.

    Idempotent per key: replaying the same batch returns the rows written the
    first time. A key already taken by a different entry is a Conflict.
    """
    if not entries:
        return []
    prior = _existing(entries)
    if prior is not None:
        return prior

    rows = [_row(e) for e in entries]
    try:
        db.session.add_all(rows)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        prior = _existing(entries)
        if prior is None:
            raise ExternalServiceError("ledger", "Ledger write rejected")
        return prior
    except SQLAlchemyError as e:
        db.session.rollback()
        raise ExternalServiceError("ledger", "Ledger unavailable") from e

    for r in rows:
        current_app.logger.info(
            "ledger append id=%s user=%s kind=%s amount=%s key=%s",
            r.id, r.user_id, r.kind, r.amount, r.idempotency_key,
        )
    return rows


def append_entry(**kwargs) -> WalletTxn:
    return append_entries([Entry(**kwargs)])[0]


def find_by_key(key: str) -> WalletTxn | None:
    return WalletTxn.query.filter_by(idempotency_key=key[:160]).first()


def get_balance(user_id: int) -> int:
    """Sum of completed entries. Derived on read; there is no stored balance."""
    total = (
        db.session.query(func.coalesce(func.sum(WalletTxn.amount), 0))
        .filter(WalletTxn.user_id == int(user_id), WalletTxn.status == "completed")
        .scalar()
    )
    return int(total or 0)


def entries_for_bounty(bounty_id: int) -> list[WalletTxn]:
    return (
        WalletTxn.query.filter_by(bounty_id=int(bounty_id))
        .order_by(WalletTxn.id.asc())
        .all()
    )


def settlement_for_bounty(bounty_id: int) -> WalletTxn | None:
    return (
        WalletTxn.query
        .filter(WalletTxn.bounty_id == int(bounty_id), WalletTxn.kind.in_(SETTLEMENT_KINDS))
        .first()
    )


def list_entries(user_id: int, *, kind: str | None = None, bounty_id: int | None = None, limit: int = 50, offset: int = 0) -> list[WalletTxn]:
    q = WalletTxn.query.filter_by(user_id=int(user_id))
    if kind:
        q = q.filter_by(kind=kind)
    if bounty_id:
        q = q.filter_by(bounty_id=int(bounty_id))
    limit = max(1, min(int(limit or 50), 200))
    return q.order_by(WalletTxn.created_at.desc(), WalletTxn.id.desc()).offset(max(0, int(offset or 0))).limit(limit).all()
