from __future__ import annotations

from datetime import datetime
from enum import Enum

from flask import current_app

from bountypay.errors import Conflict, ExternalServiceError, Forbidden, InsufficientFunds, NotFound, ValidationError
from bountypay.extensions import db
from bountypay.models import Bounty, PaymentIntent
from bountypay.utils import ledger, stripe_client
from bountypay.utils.audit import record_audit
from bountypay.utils.cas import compare_and_set
from bountypay.utils.idempotency import run_once, scoped_key
from bountypay.utils.ledger import Entry
from bountypay.utils.money import parse_amount, split_fee
from bountypay.utils.reserves import get_available_balance
from bountypay.utils.saga import Saga


class EscrowState(str, Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowEvent(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


TRANSITIONS = {
    (EscrowState.NONE, EscrowEvent.HOLD): EscrowState.HELD,
    (EscrowState.HELD, EscrowEvent.RELEASE): EscrowState.RELEASED,
    (EscrowState.HELD, EscrowEvent.REFUND): EscrowState.REFUNDED,
}

# Bounty statuses in which each event may fire
ALLOWED_STATUSES = {
    EscrowEvent.HOLD: ("open", "in_progress"),
    EscrowEvent.RELEASE: ("in_progress",),
    EscrowEvent.REFUND: ("open", "in_progress"),
}

PROVIDER_ACTOR = "provider"


def _now() -> datetime:
    return datetime.utcnow()


def next_state(state, event: EscrowEvent) -> EscrowState:
    try:
        return TRANSITIONS[(EscrowState(state or "none"), EscrowEvent(event))]
    except (KeyError, ValueError):
        raise Conflict(f"Cannot {EscrowEvent(event).value} escrow in state {state}") from None


def _load_bounty(bounty_id) -> Bounty:
    bounty = db.session.get(Bounty, int(bounty_id))
    if not bounty:
        raise NotFound("Bounty", bounty_id)
    return bounty


def get_bounty(bounty_id) -> Bounty:
    return _load_bounty(bounty_id)


def _fee_percent():
    return current_app.config.get("PLATFORM_FEE_PERCENT", "10")


def _held_amount(bounty: Bounty) -> int:
    hold = ledger.find_by_key(ledger.hold_key(bounty.id))
    if not hold:
        raise NotFound("Escrow hold for bounty", bounty.id)
    return -int(hold.amount)


def _result(bounty_id, entries) -> dict:
    bounty = _load_bounty(bounty_id)
    return {"ok": True, "bounty": bounty.to_dict(), "entries": [e.to_dict() for e in entries]}


def create_escrow(poster_id, bounty_id, amount, idempotency_key: str | None = None, payment_method: str | None = None) -> dict:
    """Hold the bounty amount in escrow.

    Wallet funds are used when the available balance covers the amount;
    otherwise a card authorisation is placed with ``payment_method``.
    """
    amount = parse_amount(amount)
    key = scoped_key("escrow", poster_id, idempotency_key)
    payload = {"bounty_id": int(bounty_id), "amount": amount, "payment_method": payment_method}
    return run_once(
        key,
        lambda: _create_escrow(int(poster_id), int(bounty_id), amount, payment_method),
        user_id=poster_id,
        route="create_escrow",
        payload=payload,
    )


def _create_escrow(poster_id: int, bounty_id: int, amount: int, payment_method: str | None) -> dict:
    bounty = _load_bounty(bounty_id)
    if int(bounty.poster_id) != poster_id:
        raise Forbidden("Only the poster can fund this bounty")
    if bounty.is_for_honor:
        raise ValidationError("Bounties posted for honor carry no funds")
    min_cents = int(current_app.config.get("MIN_ESCROW_CENTS") or 1)
    if amount < min_cents:
        raise ValidationError(f"Escrow amount must be at least {min_cents}")
    if amount != int(bounty.amount or 0):
        raise ValidationError("Escrow amount must equal the bounty amount")
    next_state(bounty.escrow_state, EscrowEvent.HOLD)
    if bounty.status not in ALLOWED_STATUSES[EscrowEvent.HOLD]:
        raise Conflict(f"Cannot fund a bounty that is {bounty.status}")

    available = get_available_balance(poster_id)
    if available >= amount:
        source = "wallet"
    elif payment_method:
        source = "card"
    else:
        raise InsufficientFunds(f"Available balance {available} is below {amount}", {"available": available, "required": amount})

    claimed = compare_and_set(
        Bounty, bounty_id,
        {"escrow_state": EscrowState.NONE.value, "status": ALLOWED_STATUSES[EscrowEvent.HOLD]},
        {"escrow_state": EscrowState.HELD.value, "funding_source": source, "updated_at": _now()},
    )
    if not claimed:
        raise Conflict("Escrow already exists for this bounty")

    with Saga("create_escrow", bounty_id=bounty_id, source=source) as saga:
        saga.on_rollback(
            "reopen bounty escrow",
            compare_and_set, Bounty, bounty_id,
            {"escrow_state": EscrowState.HELD.value},
            {"escrow_state": EscrowState.NONE.value, "funding_source": None, "payment_reference": None},
        )
        hold_entry = Entry(
            user_id=poster_id,
            kind="escrow_hold",
            amount=amount,
            idempotency_key=ledger.hold_key(bounty_id),
            bounty_id=bounty_id,
            meta={"funding_source": source},
        )
        if source == "wallet":
            entries = ledger.append_entries([hold_entry])
        else:
            entries = _hold_on_card(saga, poster_id, bounty_id, amount, payment_method, hold_entry)
        saga.commit()

    current_app.logger.info("escrow held bounty=%s poster=%s amount=%s source=%s", bounty_id, poster_id, amount, source)
    record_audit("escrow_created", target_type="bounty", target_id=bounty_id, actor_user_id=poster_id,
                 meta={"amount": amount, "funding_source": source})
    return _result(bounty_id, entries)


def _hold_key(bounty_id: int) -> str:
    # One provider key per attempt: a voided hold must not be replayed on retry.
    attempts = PaymentIntent.query.filter_by(bounty_id=bounty_id, purpose="escrow").count()
    return f"{ledger.hold_key(bounty_id)}:{attempts}"


def _hold_on_card(saga: Saga, poster_id: int, bounty_id: int, amount: int, payment_method: str, hold_entry: Entry) -> list:
    hold = stripe_client.create_hold(
        amount,
        metadata={"purpose": "escrow", "bounty_id": bounty_id, "user_id": poster_id},
        idempotency_key=_hold_key(bounty_id),
        payment_method=payment_method,
    )
    intent_id = hold["intent_id"]
    if hold.get("status") == "canceled":
        raise ExternalServiceError("stripe", "Card authorisation is no longer valid", {"intent_id": intent_id})
    saga.on_rollback("release card authorisation", _void_card_hold, intent_id)

    _mirror_intent(intent_id, user_id=poster_id, bounty_id=bounty_id, purpose="escrow", amount=amount, status=hold.get("status") or "requires_capture")

    if not compare_and_set(Bounty, bounty_id, {"escrow_state": EscrowState.HELD.value, "payment_reference": None}, {"payment_reference": intent_id}):
        raise Conflict("Bounty escrow changed while the card hold was placed")

    # The card money passes through the poster's wallet so their balance is unchanged.
    hold_entry.external_reference = intent_id
    return ledger.append_entries([
        Entry(
            user_id=poster_id,
            kind="deposit",
            amount=amount,
            idempotency_key=ledger.deposit_key(intent_id),
            bounty_id=bounty_id,
            external_reference=intent_id,
            meta={"purpose": "escrow"},
        ),
        hold_entry,
    ])


def _mirror_intent(reference: str, *, user_id: int, bounty_id: int | None, purpose: str, amount: int, status: str) -> PaymentIntent:
    row = PaymentIntent.query.filter_by(reference=reference).first()
    if not row:
        row = PaymentIntent(reference=reference, user_id=user_id, bounty_id=bounty_id, purpose=purpose, amount=amount)
        db.session.add(row)
    row.status = status
    row.updated_at = _now()
    db.session.commit()
    return row


def _set_intent_status(reference: str, status: str) -> None:
    row = PaymentIntent.query.filter_by(reference=reference).first()
    if row:
        row.status = status
        row.updated_at = _now()
        db.session.commit()


def _void_card_hold(intent_id: str) -> None:
    stripe_client.cancel_hold(intent_id, idempotency_key=f"cancel:{intent_id}")
    _set_intent_status(intent_id, "canceled")


def _return_card_funds(bounty_id: int, intent_id: str) -> str:
    """Give card money back: refund a captured intent, cancel an uncaptured one."""
    status = stripe_client.retrieve_intent(intent_id)["status"]
    if status == "succeeded":
        refunded = stripe_client.refund(intent_id, idempotency_key=f"refund:bounty:{bounty_id}")
        return refunded["refund_id"] or intent_id
    if status != "canceled":
        _void_card_hold(intent_id)
    return intent_id


def accept_bounty(hunter_id, bounty_id) -> dict:
    bounty = _load_bounty(bounty_id)
    if int(bounty.poster_id) == int(hunter_id):
        raise Forbidden("Posters cannot accept their own bounty")
    if bounty.status != "open":
        raise Conflict(f"Bounty is {bounty.status}")
    expected = {"status": "open", "hunter_id": None}
    if not bounty.is_for_honor:
        if bounty.escrow_state != EscrowState.HELD.value:
            raise Conflict("Bounty must be funded before it can be accepted")
        expected["escrow_state"] = EscrowState.HELD.value

    if not compare_and_set(Bounty, bounty.id, expected, {"status": "in_progress", "hunter_id": int(hunter_id), "updated_at": _now()}):
        raise Conflict("Bounty was taken by another request")
    current_app.logger.info("bounty accepted bounty=%s hunter=%s", bounty_id, hunter_id)
    return {"ok": True, "bounty": _load_bounty(bounty_id).to_dict()}


def release_escrow(poster_id, bounty_id, idempotency_key: str | None = None) -> dict:
    """Pay the hunter (minus the platform fee) for a completed bounty."""
    key = scoped_key("release", poster_id, idempotency_key)
    return run_once(
        key,
        lambda: _release(int(bounty_id), actor_id=int(poster_id)),
        user_id=poster_id,
        route="release_escrow",
        payload={"bounty_id": int(bounty_id)},
    )


def _release(bounty_id: int, *, actor_id: int | None, provider_confirmed: bool = False) -> dict:
    bounty = _load_bounty(bounty_id)
    if actor_id is not None and int(bounty.poster_id) != actor_id:
        raise Forbidden("Only the poster can release this escrow")
    next_state(bounty.escrow_state, EscrowEvent.RELEASE)
    if bounty.status not in ALLOWED_STATUSES[EscrowEvent.RELEASE] or not bounty.hunter_id:
        raise Conflict("Escrow can only be released on an accepted bounty")
    if ledger.settlement_for_bounty(bounty_id):
        raise Conflict("Escrow has already been settled")

    held = _held_amount(bounty)
    fee, payout = split_fee(held, _fee_percent())
    # Resolved before anything moves: a missing fee account must not strand a capture.
    platform_id = ledger.platform_user_id() if fee else None
    hunter_id = int(bounty.hunter_id)
    reference = bounty.payment_reference

    if bounty.funding_source == "card" and reference and not provider_confirmed:
        # A timeout here propagates; the capture webhook finishes the release.
        stripe_client.capture_hold(reference, idempotency_key=f"capture:bounty:{bounty_id}")

    with Saga("release_escrow", bounty_id=bounty_id) as saga:
        if not compare_and_set(
            Bounty, bounty_id,
            {"status": "in_progress", "escrow_state": EscrowState.HELD.value},
            {"status": "completed", "escrow_state": EscrowState.RELEASED.value, "payment_reference": None, "updated_at": _now()},
        ):
            raise Conflict("Escrow was settled by a concurrent request")
        saga.on_rollback(
            "restore held escrow",
            compare_and_set, Bounty, bounty_id,
            {"status": "completed", "escrow_state": EscrowState.RELEASED.value},
            {"status": "in_progress", "escrow_state": EscrowState.HELD.value, "payment_reference": reference},
        )
        entries = [
            Entry(
                user_id=hunter_id,
                kind="release",
                amount=payout,
                idempotency_key=ledger.settle_key(bounty_id),
                bounty_id=bounty_id,
                external_reference=reference,
                meta={"gross": held, "fee": fee},
            ),
        ]
        if fee:
            entries.append(Entry(
                user_id=platform_id,
                kind="platform_fee",
                amount=fee,
                idempotency_key=ledger.fee_key(bounty_id),
                bounty_id=bounty_id,
                meta={"fee_percent": str(_fee_percent())},
            ))
        entries = ledger.append_entries(entries)
        saga.commit()

    actor = actor_id if actor_id is not None else PROVIDER_ACTOR
    current_app.logger.info("escrow released bounty=%s hunter=%s payout=%s fee=%s actor=%s", bounty_id, hunter_id, payout, fee, actor)
    record_audit("escrow_released", target_type="bounty", target_id=bounty_id, actor_user_id=actor_id,
                 meta={"payout": payout, "fee": fee, "hunter_id": hunter_id, "actor": actor})
    return _result(bounty_id, entries)


def refund_escrow(poster_id, bounty_id, reason: str = "", idempotency_key: str | None = None) -> dict:
    """Cancel the bounty and return the held funds to the poster."""
    key = scoped_key("refund", poster_id, idempotency_key)
    return run_once(
        key,
        lambda: _refund(int(bounty_id), actor_id=int(poster_id), reason=reason),
        user_id=poster_id,
        route="refund_escrow",
        payload={"bounty_id": int(bounty_id), "reason": reason},
    )


def _refund(bounty_id: int, *, actor_id: int | None, reason: str = "", provider_voided: bool = False) -> dict:
    bounty = _load_bounty(bounty_id)
    if actor_id is not None and int(bounty.poster_id) != actor_id:
        raise Forbidden("Only the poster can refund this escrow")
    next_state(bounty.escrow_state, EscrowEvent.REFUND)
    if bounty.status not in ALLOWED_STATUSES[EscrowEvent.REFUND]:
        raise Conflict(f"Cannot refund a bounty that is {bounty.status}")
    if ledger.settlement_for_bounty(bounty_id):
        raise Conflict("Escrow has already been settled")

    held = _held_amount(bounty)
    poster_id = int(bounty.poster_id)
    status = bounty.status
    reference = bounty.payment_reference

    with Saga("refund_escrow", bounty_id=bounty_id) as saga:
        # Exact prior status: an accept racing this refund makes it lose.
        if not compare_and_set(
            Bounty, bounty_id,
            {"status": status, "escrow_state": EscrowState.HELD.value},
            {"status": "cancelled", "escrow_state": EscrowState.REFUNDED.value, "payment_reference": None, "updated_at": _now()},
        ):
            raise Conflict("Escrow was settled by a concurrent request")
        saga.on_rollback(
            "restore held escrow",
            compare_and_set, Bounty, bounty_id,
            {"status": "cancelled", "escrow_state": EscrowState.REFUNDED.value},
            {"status": status, "escrow_state": EscrowState.HELD.value, "payment_reference": reference},
        )

        entries = [
            Entry(
                user_id=poster_id,
                kind="refund",
                amount=held,
                idempotency_key=ledger.settle_key(bounty_id),
                bounty_id=bounty_id,
                external_reference=reference,
                meta={"reason": reason[:200]} if reason else {},
            )
        ]
        if bounty.funding_source == "card" and reference:
            returned_ref = reference
            if not provider_voided:
                returned_ref = _return_card_funds(bounty_id, reference)
            # The card money leaves the wallet again.
            entries.append(Entry(
                user_id=poster_id,
                kind="withdrawal",
                amount=held,
                idempotency_key=f"card-return:bounty:{bounty_id}",
                bounty_id=bounty_id,
                external_reference=returned_ref,
                meta={"returned_to": "card", "intent": reference},
            ))
        written = ledger.append_entries(entries)
        saga.commit()

    actor = actor_id if actor_id is not None else PROVIDER_ACTOR
    current_app.logger.info("escrow refunded bounty=%s poster=%s amount=%s actor=%s", bounty_id, poster_id, held, actor)
    record_audit("escrow_refunded", target_type="bounty", target_id=bounty_id, actor_user_id=actor_id,
                 meta={"amount": held, "reason": reason, "actor": actor})
    return _result(bounty_id, written)


def confirm_capture(bounty_id, intent_id: str) -> dict | None:
    """Provider says the hold was captured: finish the release if it is still pending."""
    bounty = _load_bounty(bounty_id)
    if bounty.escrow_state == EscrowState.RELEASED.value:
        return None
    if bounty.escrow_state != EscrowState.HELD.value or bounty.payment_reference != intent_id:
        current_app.logger.warning("capture for bounty=%s intent=%s does not match escrow state=%s", bounty_id, intent_id, bounty.escrow_state)
        return None
    if bounty.status != "in_progress":
        current_app.logger.warning("capture for bounty=%s arrived while bounty is %s", bounty_id, bounty.status)
        return None
    try:
        return _release(int(bounty_id), actor_id=None, provider_confirmed=True)
    except Conflict:
        if _load_bounty(bounty_id).escrow_state == EscrowState.RELEASED.value:
            return None
        raise


def void_hold(bounty_id, intent_id: str, reason: str = "payment_failed") -> dict | None:
    """Provider says the authorisation failed or was cancelled: refund if still held."""
    bounty = _load_bounty(bounty_id)
    if bounty.escrow_state != EscrowState.HELD.value or bounty.payment_reference != intent_id:
        return None
    try:
        return _refund(int(bounty_id), actor_id=None, reason=reason, provider_voided=True)
    except Conflict:
        if _load_bounty(bounty_id).escrow_state != EscrowState.HELD.value:
            return None
        raise
