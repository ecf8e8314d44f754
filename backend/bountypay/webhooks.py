"""Stripe webhook reconciler.

Each delivery is verified, claimed under ``stripe-event:<id>``, stored raw,
dispatched to its handler and only then marked processed. Handlers write
through idempotent ledger keys, so replaying an event is a no-op.
"""
from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from bountypay import escrow, payouts
from bountypay.errors import ExternalServiceError, InvalidSignature, PaymentError, ValidationError
from bountypay.extensions import db
from bountypay.models import ConnectAccount, PaymentIntent, PayoutRequest, User, WebhookEvent
from bountypay.models.user import RISK_LEVELS
from bountypay.utils import idempotency, ledger, stripe_client
from bountypay.utils.audit import record_audit

HANDLERS = {}


def handles(*event_types):
    def deco(fn):
        for t in event_types:
            HANDLERS[t] = fn
        return fn
    return deco


def _guard_key(event_id: str) -> str:
    return f"stripe-event:{event_id}"


def handle_stripe_webhook(raw_body: bytes, signature_header: str | None) -> tuple[dict, int]:
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET") or ""
    if not secret:
        raise ExternalServiceError("configuration", "Webhook secret is not configured")
    tolerance = int(current_app.config.get("WEBHOOK_TOLERANCE_SECONDS") or 300)
    if not stripe_client.verify_signature(raw_body, signature_header, secret, tolerance=tolerance):
        raise InvalidSignature("Webhook signature verification failed")

    try:
        event = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationError("Malformed webhook payload") from None
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValidationError("Webhook payload is missing id or type")

    event_id = str(event["id"])
    existing = WebhookEvent.query.filter_by(event_id=event_id).first()
    if existing and existing.processed:
        return {"received": True, "duplicate": True}, 200

    claim = idempotency.claim(_guard_key(event_id), route="webhook:stripe")
    if not claim.claimed:
        current_app.logger.info("stripe event already claimed id=%s type=%s", event_id, event["type"])
        return {"received": True, "duplicate": True}, 200

    record = _record(event_id, str(event["type"]), raw_body)
    return _apply(record, event, release_on_failure=True)


def _record(event_id: str, event_type: str, raw_body: bytes) -> WebhookEvent:
    row = WebhookEvent.query.filter_by(event_id=event_id).first()
    if not row:
        row = WebhookEvent(
            provider="stripe",
            event_id=event_id,
            event_type=event_type[:64],
            payload=raw_body.decode("utf-8", errors="replace"),
            processed=False,
        )
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            row = WebhookEvent.query.filter_by(event_id=event_id).first()
    return row


def _apply(record: WebhookEvent, event: dict, *, release_on_failure: bool) -> tuple[dict, int]:
    event_type = str(event.get("type") or "")
    obj = ((event.get("data") or {}).get("object")) or {}
    handler = HANDLERS.get(event_type)
    record.attempts = int(record.attempts or 0) + 1
    db.session.commit()

    try:
        if handler:
            handler(obj, event)
        else:
            current_app.logger.info("stripe event ignored id=%s type=%s", record.event_id, event_type)
    except Exception as e:
        db.session.rollback()
        if isinstance(e, PaymentError) and not e.retryable:
            _mark_failed(record, f"{e.kind}: {e.message}")
            current_app.logger.warning("stripe event rejected id=%s type=%s error=%s", record.event_id, event_type, e.message)
            return {"received": True, "processed": False}, 200
        _mark_failed(record, f"{type(e).__name__}: {e}")
        current_app.logger.exception("stripe event failed id=%s type=%s", record.event_id, event_type)
        if release_on_failure:
            idempotency.release(_guard_key(record.event_id))
        if isinstance(e, ExternalServiceError):
            raise
        raise ExternalServiceError("webhook", "Event processing failed") from e

    record.processed = True
    record.processed_at = datetime.utcnow()
    record.last_error = None
    db.session.commit()
    return {"received": True}, 200


def _mark_failed(record: WebhookEvent, message: str) -> None:
    record.last_error = message[:500]
    db.session.commit()


def replay_unprocessed(limit: int = 100) -> dict:
    """Re-run stored events that never completed. Signatures were checked on receipt."""
    rows = (
        WebhookEvent.query.filter_by(processed=False)
        .order_by(WebhookEvent.created_at.asc())
        .limit(int(limit))
        .all()
    )
    out = {"checked": len(rows), "processed": 0, "failed": 0}
    for row in rows:
        try:
            event = json.loads(row.payload or "{}")
        except ValueError:
            _mark_failed(row, "unparseable payload")
            out["failed"] += 1
            continue
        try:
            _apply(row, event, release_on_failure=False)
        except ExternalServiceError:
            out["failed"] += 1
            continue
        if row.processed:
            out["processed"] += 1
        else:
            out["failed"] += 1
    return out


def _meta(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _intent_row(intent_id: str) -> PaymentIntent | None:
    if not intent_id:
        return None
    return PaymentIntent.query.filter_by(reference=intent_id).first()


def _mirror_status(intent_id: str, status: str) -> PaymentIntent | None:
    row = _intent_row(intent_id)
    if row:
        row.status = status
        row.updated_at = datetime.utcnow()
        db.session.commit()
    return row


def _purpose(obj: dict, row: PaymentIntent | None) -> str:
    return (_meta(obj).get("purpose") or (row.purpose if row else "") or "topup").lower()


@handles("payment_intent.succeeded")
def _intent_succeeded(obj: dict, event: dict) -> None:
    intent_id = obj.get("id") or ""
    row = _mirror_status(intent_id, "succeeded")
    meta = _meta(obj)

    if _purpose(obj, row) == "escrow":
        bounty_id = _int_or_none(meta.get("bounty_id")) or (row.bounty_id if row else None)
        if not bounty_id:
            raise ValidationError(f"Escrow intent {intent_id} has no bounty")
        escrow.confirm_capture(bounty_id, intent_id)
        return

    user_id = _int_or_none(meta.get("user_id")) or (row.user_id if row else None)
    amount = int(obj.get("amount_received") or obj.get("amount") or 0)
    if not user_id or amount <= 0:
        raise ValidationError(f"Intent {intent_id} has no depositor or amount")
    ledger.append_entry(
        user_id=user_id,
        kind="deposit",
        amount=amount,
        idempotency_key=ledger.deposit_key(intent_id),
        external_reference=intent_id,
        meta={"event_id": event.get("id"), "purpose": "topup"},
    )


@handles("payment_intent.payment_failed", "payment_intent.canceled")
def _intent_failed(obj: dict, event: dict) -> None:
    intent_id = obj.get("id") or ""
    status = "canceled" if event.get("type") == "payment_intent.canceled" else "failed"
    row = _mirror_status(intent_id, status)
    if _purpose(obj, row) != "escrow":
        current_app.logger.info("topup intent %s %s", intent_id, status)
        return
    bounty_id = _int_or_none(_meta(obj).get("bounty_id")) or (row.bounty_id if row else None)
    if bounty_id:
        escrow.void_hold(bounty_id, intent_id, reason=f"payment_{status}")


@handles("charge.refunded")
def _charge_refunded(obj: dict, event: dict) -> None:
    intent_id = obj.get("payment_intent") or ""
    row = _intent_row(intent_id)
    if _purpose(obj, row) == "escrow":
        # Escrow refunds are booked when the refund is issued.
        return
    deposit = ledger.find_by_key(ledger.deposit_key(intent_id)) if intent_id else None
    user_id = (row.user_id if row else None) or (deposit.user_id if deposit else None)
    if not user_id:
        raise ValidationError(f"No depositor found for refunded charge {obj.get('id')}")

    for refund in ((obj.get("refunds") or {}).get("data") or []):
        refund_id = refund.get("id")
        amount = int(refund.get("amount") or 0)
        if not refund_id or amount <= 0:
            continue
        ledger.append_entry(
            user_id=int(user_id),
            kind="withdrawal",
            amount=amount,
            idempotency_key=f"chargeback:{refund_id}",
            external_reference=refund_id,
            meta={"charge": obj.get("id"), "payment_intent": intent_id, "event_id": event.get("id")},
        )


def _payout_for(obj: dict) -> PayoutRequest | None:
    transfer_id = obj.get("id") or ""
    pr = PayoutRequest.query.filter_by(external_transfer_id=transfer_id).first() if transfer_id else None
    if pr:
        return pr
    payout_id = _int_or_none(_meta(obj).get("payout_id"))
    return db.session.get(PayoutRequest, payout_id) if payout_id else None


@handles("transfer.created", "transfer.paid")
def _transfer_paid(obj: dict, event: dict) -> None:
    pr = _payout_for(obj)
    if not pr:
        current_app.logger.warning("transfer %s matches no payout", obj.get("id"))
        return
    if pr.status == "failed":
        current_app.logger.error("transfer %s reported paid for failed payout=%s", obj.get("id"), pr.id)
        record_audit("reconciliation_anomaly", target_type="payout", target_id=pr.id,
                     meta={"transfer_id": obj.get("id"), "event": event.get("type")})
        return
    if not pr.external_transfer_id:
        pr.external_transfer_id = obj.get("id")
    pr.status = "paid"
    pr.updated_at = datetime.utcnow()
    db.session.commit()


@handles("transfer.failed", "transfer.reversed")
def _transfer_failed(obj: dict, event: dict) -> None:
    pr = _payout_for(obj)
    if not pr:
        raise ValidationError(f"Transfer {obj.get('id')} matches no payout")
    if not pr.external_transfer_id and obj.get("id"):
        pr.external_transfer_id = obj.get("id")
        db.session.commit()
    payouts.compensate_failed_transfer(pr.id, event.get("type") or "transfer_failed")


@handles("charge.dispute.created")
def _dispute_opened(obj: dict, event: dict) -> None:
    intent_id = obj.get("payment_intent") or ""
    row = _intent_row(intent_id)
    deposit = ledger.find_by_key(ledger.deposit_key(intent_id)) if intent_id else None
    user_id = (row.user_id if row else None) or (deposit.user_id if deposit else None)
    record_audit("dispute_opened", target_type="user", target_id=user_id,
                 meta={"dispute": obj.get("id"), "charge": obj.get("charge"), "amount": obj.get("amount"), "reason": obj.get("reason")})
    user = db.session.get(User, int(user_id)) if user_id else None
    if not user:
        current_app.logger.warning("dispute %s matches no user", obj.get("id"))
        return
    current = user.risk_level if user.risk_level in RISK_LEVELS else "low"
    if RISK_LEVELS.index(current) < RISK_LEVELS.index("high"):
        user.risk_level = "high"
        db.session.commit()
        current_app.logger.warning("risk raised to high user=%s dispute=%s", user.id, obj.get("id"))


@handles("account.updated")
def _account_updated(obj: dict, event: dict) -> None:
    row = ConnectAccount.query.filter_by(external_account_id=obj.get("id") or "").first()
    if not row:
        current_app.logger.info("account.updated for unknown account %s", obj.get("id"))
        return
    payouts.apply_account_flags(
        row,
        payouts_enabled=bool(obj.get("payouts_enabled")),
        details_submitted=bool(obj.get("details_submitted")),
    )
