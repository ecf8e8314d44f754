from __future__ import annotations

import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from bountypay.errors import Conflict, ExternalServiceError, InsufficientFunds, NotOnboarded, ProviderTimeout, ValidationError
from bountypay.extensions import db
from bountypay.models import ConnectAccount, PayoutRequest
from bountypay.utils import ledger, stripe_client
from bountypay.utils.audit import record_audit
from bountypay.utils.idempotency import run_once, scoped_key
from bountypay.utils.ledger import Entry
from bountypay.utils.money import parse_amount
from bountypay.utils.reserves import get_available_balance
from bountypay.utils.saga import Saga


def _now() -> datetime:
    return datetime.utcnow()


def reversal_key(payout_id) -> str:
    # Shared by the synchronous failure path and the transfer.failed webhook.
    return f"reversal:payout:{int(payout_id)}"


def _transfer_key(pr: PayoutRequest) -> str:
    return f"transfer:{pr.idempotency_key}"[:255]


def withdraw(user_id, amount, idempotency_key: str | None = None) -> dict:
    amount = parse_amount(amount)
    key = scoped_key("withdraw", user_id, idempotency_key)
    return run_once(
        key,
        lambda: payout(int(user_id), amount, key),
        user_id=user_id,
        route="withdraw",
        payload={"amount": amount},
    )


def payout(user_id: int, amount: int, idempotency_key: str | None = None) -> dict:
    """Move ``amount`` from the user's wallet to their connected account.

    The wallet is debited before the transfer. A definite provider failure is
    compensated with a credit; a timeout leaves the payout ``unknown`` and the
    debit in place until the transfer webhook (or a retry with the same key)
    settles it.
    """
    amount = parse_amount(amount)
    provider_key = (idempotency_key or f"payout:{int(user_id)}:{uuid.uuid4().hex}")[:255]

    existing = PayoutRequest.query.filter_by(idempotency_key=provider_key).first()
    if existing:
        return _resume(existing, amount)

    account = ConnectAccount.query.filter_by(user_id=int(user_id)).first()
    if not account or not account.payouts_enabled:
        raise NotOnboarded("Payout account is not set up to receive transfers")

    available = get_available_balance(user_id)
    if available < amount:
        raise InsufficientFunds(f"Available balance {available} is below {amount}", {"available": available, "required": amount})

    pr = PayoutRequest(
        user_id=int(user_id),
        amount=amount,
        status="pending",
        destination=account.external_account_id,
        idempotency_key=provider_key,
    )
    try:
        db.session.add(pr)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("A payout with this idempotency key already exists")

    try:
        debit = ledger.append_entry(
            user_id=int(user_id),
            kind="withdrawal",
            amount=amount,
            idempotency_key=f"payout:{int(pr.id)}",
            meta={"payout_id": int(pr.id), "destination": pr.destination},
        )
    except Exception:
        pr.status = "failed"
        pr.failure_reason = "ledger debit failed"
        db.session.commit()
        raise
    pr.ledger_txn_id = int(debit.id)
    db.session.commit()

    return _dispatch(pr)


def _dispatch(pr: PayoutRequest) -> dict:
    with Saga("payout", payout_id=int(pr.id), user_id=int(pr.user_id)) as saga:
        saga.on_rollback("credit back failed payout", compensate_failed_transfer, int(pr.id), "transfer_failed")
        try:
            transfer = stripe_client.create_transfer(
                pr.destination,
                int(pr.amount),
                metadata={"payout_id": int(pr.id), "user_id": int(pr.user_id)},
                idempotency_key=_transfer_key(pr),
            )
        except ProviderTimeout:
            saga.commit()
            pr.status = "unknown"
            pr.updated_at = _now()
            db.session.commit()
            current_app.logger.warning("payout outcome unknown payout=%s user=%s amount=%s", pr.id, pr.user_id, pr.amount)
            record_audit("payout_unknown", target_type="payout", target_id=pr.id, actor_user_id=pr.user_id, meta={"amount": int(pr.amount)})
            raise
        saga.commit()

    pr.external_transfer_id = transfer["transfer_id"] or None
    pr.status = "paid"
    pr.updated_at = _now()
    db.session.commit()
    current_app.logger.info("payout sent payout=%s user=%s amount=%s transfer=%s", pr.id, pr.user_id, pr.amount, pr.external_transfer_id)
    record_audit("payout_sent", target_type="payout", target_id=pr.id, actor_user_id=pr.user_id,
                 meta={"amount": int(pr.amount), "transfer_id": pr.external_transfer_id})
    return {"ok": True, "payout": pr.to_dict(), "external_transfer_id": pr.external_transfer_id, "status": pr.status}


def _resume(pr: PayoutRequest, amount: int) -> dict:
    if int(pr.amount) != int(amount):
        raise Conflict("Idempotency key reuse with different payload")
    if pr.status == "unknown":
        # The provider key makes this a lookup when the first transfer landed.
        return _dispatch(pr)
    if pr.status == "failed":
        raise ExternalServiceError("stripe", "Payout failed", {"payout_id": int(pr.id)})
    return {"ok": True, "payout": pr.to_dict(), "external_transfer_id": pr.external_transfer_id, "status": pr.status}


def compensate_failed_transfer(payout_id: int, reason: str) -> PayoutRequest:
    """Credit the debit back and mark the payout failed. Safe to call more than once."""
    pr = db.session.get(PayoutRequest, int(payout_id))
    if not pr:
        raise ValidationError(f"Unknown payout {payout_id}")
    if pr.ledger_txn_id:
        ledger.append_entry(
            user_id=int(pr.user_id),
            kind="refund",
            amount=int(pr.amount),
            idempotency_key=reversal_key(pr.id),
            external_reference=pr.external_transfer_id,
            meta={"payout_id": int(pr.id), "reverses": int(pr.ledger_txn_id), "reason": reason},
        )
    already = pr.status == "failed"
    pr.status = "failed"
    pr.failure_reason = (reason or "")[:240]
    pr.updated_at = _now()
    db.session.commit()
    if not already:
        current_app.logger.warning("payout compensated payout=%s user=%s amount=%s reason=%s", pr.id, pr.user_id, pr.amount, reason)
        record_audit("payout_compensated", target_type="payout", target_id=pr.id, actor_user_id=pr.user_id,
                     meta={"amount": int(pr.amount), "reason": reason})
    return pr


def retry_unknown_payouts(limit: int = 50) -> dict:
    """Re-drive payouts left ``unknown`` by a timeout, reusing their provider keys."""
    rows = (
        PayoutRequest.query.filter_by(status="unknown")
        .order_by(PayoutRequest.created_at.asc())
        .limit(int(limit))
        .all()
    )
    out = {"checked": len(rows), "paid": 0, "failed": 0, "still_unknown": 0}
    for pr in rows:
        try:
            _dispatch(pr)
            out["paid"] += 1
        except ProviderTimeout:
            out["still_unknown"] += 1
        except ExternalServiceError:
            out["failed"] += 1
    return out


def register_connect_account(user_id, external_account_id: str) -> dict:
    external_account_id = (external_account_id or "").strip()
    if not external_account_id:
        raise ValidationError("account_id is required")
    other = ConnectAccount.query.filter_by(external_account_id=external_account_id).first()
    if other and int(other.user_id) != int(user_id):
        raise Conflict("Account is already linked to another user")

    row = ConnectAccount.query.filter_by(user_id=int(user_id)).first()
    if not row:
        row = ConnectAccount(user_id=int(user_id), external_account_id=external_account_id)
        db.session.add(row)
    elif row.external_account_id != external_account_id:
        row.external_account_id = external_account_id
        row.payouts_enabled = False
        row.details_submitted = False
    row.updated_at = _now()
    db.session.commit()
    return sync_connect_account(user_id)


def sync_connect_account(user_id) -> dict:
    row = ConnectAccount.query.filter_by(user_id=int(user_id)).first()
    if not row:
        raise NotOnboarded("No payout account registered")
    info = stripe_client.retrieve_account(row.external_account_id)
    apply_account_flags(row, payouts_enabled=info["payouts_enabled"], details_submitted=info["details_submitted"])
    return {"ok": True, "account": row.to_dict()}


def apply_account_flags(row: ConnectAccount, *, payouts_enabled: bool, details_submitted: bool) -> ConnectAccount:
    row.payouts_enabled = bool(payouts_enabled)
    row.details_submitted = bool(details_submitted)
    row.updated_at = _now()
    db.session.commit()
    return row
