from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from bountypay.extensions import db
from bountypay.models import User, WalletTxn
from bountypay.utils.ledger import get_balance
from bountypay.utils.money import parse_percent, percent_of


def reserve_percent(risk_level: str | None) -> Decimal:
    table = current_app.config.get("RESERVE_PERCENTAGES") or {}
    raw = table.get((risk_level or "low").lower())
    if raw is None:
        # Unknown levels are treated as the strictest configured one.
        raw = max((parse_percent(v) for v in table.values()), default=Decimal(0))
    return parse_percent(raw)


def trailing_volume(user_id: int, *, days: int | None = None, now: datetime | None = None) -> int:
    window = int(days if days is not None else current_app.config.get("RESERVE_WINDOW_DAYS", 30))
    since = (now or datetime.utcnow()) - timedelta(days=window)
    total = (
        db.session.query(func.coalesce(func.sum(func.abs(WalletTxn.amount)), 0))
        .filter(
            WalletTxn.user_id == int(user_id),
            WalletTxn.status == "completed",
            WalletTxn.created_at >= since,
        )
        .scalar()
    )
    return int(total or 0)


def compute_reserve(user_id: int, *, balance: int | None = None) -> int:
    user = db.session.get(User, int(user_id))
    pct = reserve_percent(user.risk_level if user else None)
    if pct == 0:
        return 0
    bal = get_balance(user_id) if balance is None else int(balance)
    reserve = percent_of(trailing_volume(user_id), pct)
    return min(reserve, max(bal, 0))


def get_available_balance(user_id: int) -> int:
    """Balance minus the risk reserve. Never negative."""
    bal = get_balance(user_id)
    return max(bal - compute_reserve(user_id, balance=bal), 0)


def balance_summary(user_id: int) -> dict:
    bal = get_balance(user_id)
    reserve = compute_reserve(user_id, balance=bal)
    return {
        "user_id": int(user_id),
        "balance": bal,
        "reserve": reserve,
        "available": max(bal - reserve, 0),
        "currency": current_app.config.get("CURRENCY", "usd"),
    }
