from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from bountypay import escrow
from bountypay.errors import Conflict, ExternalServiceError, Forbidden, InsufficientFunds, ValidationError
from bountypay.escrow import EscrowEvent, EscrowState, next_state
from bountypay.models import Bounty, PaymentIntent, User, WalletTxn
from bountypay.utils import ledger
from bountypay.utils.cas import compare_and_set

HOLD = {"intent_id": "pi_card_1", "status": "requires_capture", "client_secret": "pi_card_1_secret"}


def _bounty(db, bounty_id):
    db.session.expire_all()
    return db.session.get(Bounty, bounty_id)


def _kinds(bounty_id):
    return [r.kind for r in ledger.entries_for_bounty(bounty_id)]


@pytest.fixture
def funded(users, fund, make_bounty):
    """A wallet-funded 5000 bounty accepted by the hunter."""
    fund(users.poster, 5000)
    bounty_id = make_bounty(users.poster, 5000)
    escrow.create_escrow(users.poster, bounty_id, 5000)
    escrow.accept_bounty(users.hunter, bounty_id)
    return bounty_id


def test_transition_table():
    assert next_state("none", EscrowEvent.HOLD) is EscrowState.HELD
    assert next_state("held", EscrowEvent.RELEASE) is EscrowState.RELEASED
    assert next_state("held", EscrowEvent.REFUND) is EscrowState.REFUNDED
    for state in ("released", "refunded"):
        for event in EscrowEvent:
            with pytest.raises(Conflict):
                next_state(state, event)


def test_release_pays_hunter_net_of_fee(users, funded, db):
    assert ledger.get_balance(users.poster) == 0

    result = escrow.release_escrow(users.poster, funded)

    assert result["bounty"]["status"] == "completed"
    assert result["bounty"]["escrow_state"] == "released"
    assert ledger.get_balance(users.hunter) == 4500
    assert ledger.get_balance(users.platform) == 500
    assert ledger.get_balance(users.poster) == 0
    assert _kinds(funded) == ["escrow_hold", "release", "platform_fee"]
    amounts = [r.amount for r in ledger.entries_for_bounty(funded)]
    assert amounts == [-5000, 4500, 500]


def test_refund_returns_funds_to_poster(users, fund, make_bounty, db):
    fund(users.poster, 2000)
    bounty_id = make_bounty(users.poster, 2000)
    escrow.create_escrow(users.poster, bounty_id, 2000)
    escrow.accept_bounty(users.hunter, bounty_id)

    result = escrow.refund_escrow(users.poster, bounty_id, reason="scope changed")

    assert result["bounty"]["status"] == "cancelled"
    assert result["bounty"]["escrow_state"] == "refunded"
    assert ledger.get_balance(users.poster) == 2000
    assert ledger.get_balance(users.hunter) == 0
    assert _kinds(bounty_id) == ["escrow_hold", "refund"]


def test_open_bounty_can_be_refunded_before_acceptance(users, fund, make_bounty):
    fund(users.poster, 700)
    bounty_id = make_bounty(users.poster, 700)
    escrow.create_escrow(users.poster, bounty_id, 700)
    escrow.refund_escrow(users.poster, bounty_id)
    assert ledger.get_balance(users.poster) == 700


def test_second_release_is_a_conflict(users, funded):
    escrow.release_escrow(users.poster, funded)
    with pytest.raises(Conflict):
        escrow.release_escrow(users.poster, funded)
    assert ledger.get_balance(users.hunter) == 4500
    assert _kinds(funded).count("release") == 1


def test_refund_after_release_is_a_conflict(users, funded):
    escrow.release_escrow(users.poster, funded)
    with pytest.raises(Conflict):
        escrow.refund_escrow(users.poster, funded)
    assert "refund" not in _kinds(funded)


def test_only_the_poster_can_settle(users, funded):
    with pytest.raises(Forbidden):
        escrow.release_escrow(users.hunter, funded)
    with pytest.raises(Forbidden):
        escrow.refund_escrow(users.hunter, funded)


def test_stale_reader_loses_the_race(users, funded, db, monkeypatch):
    stale = SimpleNamespace(**_bounty(db, funded).to_dict())
    escrow.release_escrow(users.poster, funded)

    # A second request that read the bounty before the first committed.
    monkeypatch.setattr(escrow, "_load_bounty", lambda bounty_id: stale)
    monkeypatch.setattr(ledger, "settlement_for_bounty", lambda bounty_id: None)
    with pytest.raises(Conflict):
        escrow._release(funded, actor_id=users.poster)

    monkeypatch.undo()
    assert _kinds(funded).count("release") == 1
    assert ledger.get_balance(users.hunter) == 4500


def test_compare_and_set_has_one_winner(users, make_bounty):
    bounty_id = make_bounty(users.poster, 100)
    expected = {"status": "open"}
    assert compare_and_set(Bounty, bounty_id, expected, {"status": "in_progress"}) is True
    assert compare_and_set(Bounty, bounty_id, expected, {"status": "in_progress"}) is False


def test_failed_ledger_write_restores_the_bounty(users, funded, db):
    with patch("bountypay.utils.ledger.append_entries", side_effect=ExternalServiceError("ledger", "down")):
        with pytest.raises(ExternalServiceError):
            escrow.release_escrow(users.poster, funded)

    b = _bounty(db, funded)
    assert (b.status, b.escrow_state) == ("in_progress", "held")
    assert "release" not in _kinds(funded)

    escrow.release_escrow(users.poster, funded)
    assert ledger.get_balance(users.hunter) == 4500


def test_create_escrow_is_idempotent_per_key(users, fund, make_bounty):
    fund(users.poster, 3000)
    bounty_id = make_bounty(users.poster, 3000)

    first = escrow.create_escrow(users.poster, bounty_id, 3000, idempotency_key="client-key-1")
    second = escrow.create_escrow(users.poster, bounty_id, 3000, idempotency_key="client-key-1")

    assert first == second
    assert _kinds(bounty_id) == ["escrow_hold"]
    assert ledger.get_balance(users.poster) == 0


def test_second_escrow_without_key_is_a_conflict(users, fund, make_bounty):
    fund(users.poster, 6000)
    bounty_id = make_bounty(users.poster, 3000)
    escrow.create_escrow(users.poster, bounty_id, 3000)
    with pytest.raises(Conflict):
        escrow.create_escrow(users.poster, bounty_id, 3000)
    assert ledger.get_balance(users.poster) == 3000


def test_insufficient_funds_without_a_card(users, fund, make_bounty, db):
    fund(users.poster, 100)
    bounty_id = make_bounty(users.poster, 5000)
    with pytest.raises(InsufficientFunds):
        escrow.create_escrow(users.poster, bounty_id, 5000)
    assert _bounty(db, bounty_id).escrow_state == "none"
    assert _kinds(bounty_id) == []


def test_escrow_validation(users, fund, make_bounty):
    fund(users.poster, 5000)
    bounty_id = make_bounty(users.poster, 5000)
    honor_id = make_bounty(users.poster, 0, is_for_honor=True)
    with pytest.raises(ValidationError):
        escrow.create_escrow(users.poster, bounty_id, 4000)
    with pytest.raises(ValidationError):
        escrow.create_escrow(users.poster, bounty_id, 0)
    with pytest.raises(ValidationError):
        escrow.create_escrow(users.poster, honor_id, 100)
    with pytest.raises(Forbidden):
        escrow.create_escrow(users.hunter, bounty_id, 5000)


def test_accept_rules(users, make_bounty):
    unfunded = make_bounty(users.poster, 1000)
    honor = make_bounty(users.poster, 0, is_for_honor=True)

    with pytest.raises(Forbidden):
        escrow.accept_bounty(users.poster, honor)
    with pytest.raises(Conflict):
        escrow.accept_bounty(users.hunter, unfunded)

    result = escrow.accept_bounty(users.hunter, honor)
    assert result["bounty"]["status"] == "in_progress"
    assert result["bounty"]["hunter_id"] == users.hunter
    with pytest.raises(Conflict):
        escrow.accept_bounty(users.platform, honor)


def test_card_funded_escrow_and_capture_on_release(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 5000)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD) as create_hold:
        result = escrow.create_escrow(users.poster, bounty_id, 5000, payment_method="pm_card_visa")

    assert create_hold.call_args.kwargs["idempotency_key"] == f"hold:bounty:{bounty_id}:0"
    assert result["bounty"]["funding_source"] == "card"
    assert result["bounty"]["payment_reference"] == "pi_card_1"
    assert _kinds(bounty_id) == ["deposit", "escrow_hold"]
    assert ledger.get_balance(users.poster) == 0
    assert PaymentIntent.query.filter_by(reference="pi_card_1").one().purpose == "escrow"

    escrow.accept_bounty(users.hunter, bounty_id)
    with patch("bountypay.utils.stripe_client.capture_hold", return_value={"intent_id": "pi_card_1", "status": "succeeded", "captured_amount": 5000}) as capture:
        result = escrow.release_escrow(users.poster, bounty_id)

    capture.assert_called_once_with("pi_card_1", idempotency_key=f"capture:bounty:{bounty_id}")
    assert result["bounty"]["payment_reference"] is None
    assert ledger.get_balance(users.hunter) == 4500
    assert ledger.get_balance(users.platform) == 500


def test_card_funded_refund_cancels_the_uncaptured_hold(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 1500)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD):
        escrow.create_escrow(users.poster, bounty_id, 1500, payment_method="pm_card_visa")

    with patch("bountypay.utils.stripe_client.retrieve_intent", return_value={"intent_id": "pi_card_1", "status": "requires_capture", "amount_received": 0}), \
            patch("bountypay.utils.stripe_client.cancel_hold", return_value={"intent_id": "pi_card_1", "status": "canceled"}) as cancel, \
            patch("bountypay.utils.stripe_client.refund") as refund:
        escrow.refund_escrow(users.poster, bounty_id)

    cancel.assert_called_once_with("pi_card_1", idempotency_key="cancel:pi_card_1")
    refund.assert_not_called()
    assert _kinds(bounty_id) == ["deposit", "escrow_hold", "refund", "withdrawal"]
    assert ledger.get_balance(users.poster) == 0
    assert PaymentIntent.query.filter_by(reference="pi_card_1").one().status == "canceled"


def test_captured_card_is_refunded(users, make_bounty):
    bounty_id = make_bounty(users.poster, 1500)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD):
        escrow.create_escrow(users.poster, bounty_id, 1500, payment_method="pm_card_visa")

    with patch("bountypay.utils.stripe_client.retrieve_intent", return_value={"intent_id": "pi_card_1", "status": "succeeded", "amount_received": 1500}), \
            patch("bountypay.utils.stripe_client.cancel_hold") as cancel, \
            patch("bountypay.utils.stripe_client.refund", return_value={"refund_id": "re_1", "status": "succeeded"}) as refund:
        result = escrow.refund_escrow(users.poster, bounty_id)

    refund.assert_called_once_with("pi_card_1", idempotency_key=f"refund:bounty:{bounty_id}")
    cancel.assert_not_called()
    assert result["entries"][-1]["external_reference"] == "re_1"
    assert ledger.get_balance(users.poster) == 0


def test_card_refund_goes_to_the_cancel_endpoint(users, make_bounty):
    bounty_id = make_bounty(users.poster, 1200)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD):
        escrow.create_escrow(users.poster, bounty_id, 1200, payment_method="pm_card_visa")

    def stripe(method, url, **kwargs):
        status = "canceled" if url.endswith("/cancel") else "requires_capture"
        return MagicMock(status_code=200, content=b"{}", json=MagicMock(return_value={"id": "pi_card_1", "status": status}))

    with patch("bountypay.utils.stripe_client.requests.request", side_effect=stripe) as request:
        escrow.refund_escrow(users.poster, bounty_id)

    calls = [(c.args[0], c.args[1].split("api.stripe.com", 1)[-1]) for c in request.call_args_list]
    assert calls == [("GET", "/v1/payment_intents/pi_card_1"), ("POST", "/v1/payment_intents/pi_card_1/cancel")]


def test_declined_card_leaves_no_trace(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 1500)
    declined = ExternalServiceError("stripe", "Payment method was declined")
    with patch("bountypay.utils.stripe_client.create_hold", side_effect=declined):
        with pytest.raises(ExternalServiceError):
            escrow.create_escrow(users.poster, bounty_id, 1500, payment_method="pm_card_chargeDeclined")

    b = _bounty(db, bounty_id)
    assert (b.escrow_state, b.funding_source) == ("none", None)
    assert WalletTxn.query.count() == 0

def test_card_hold_is_voided_when_the_ledger_write_fails(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 1500)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD), \
            patch("bountypay.utils.stripe_client.cancel_hold", return_value={"intent_id": "pi_card_1", "status": "canceled"}) as cancel, \
            patch("bountypay.utils.ledger.append_entries", side_effect=ExternalServiceError("ledger", "down")):
        with pytest.raises(ExternalServiceError):
            escrow.create_escrow(users.poster, bounty_id, 1500, payment_method="pm_card_visa")

    cancel.assert_called_once_with("pi_card_1", idempotency_key="cancel:pi_card_1")
    b = _bounty(db, bounty_id)
    assert (b.escrow_state, b.payment_reference) == ("none", None)
    assert PaymentIntent.query.filter_by(reference="pi_card_1").one().status == "canceled"


def test_retry_after_a_voided_hold_places_a_new_one(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 1500)
    with patch("bountypay.utils.stripe_client.create_hold", return_value=HOLD) as first, \
            patch("bountypay.utils.stripe_client.cancel_hold", return_value={"intent_id": "pi_card_1", "status": "canceled"}), \
            patch("bountypay.utils.ledger.append_entries", side_effect=ExternalServiceError("ledger", "down")):
        with pytest.raises(ExternalServiceError):
            escrow.create_escrow(users.poster, bounty_id, 1500, idempotency_key="esc-card", payment_method="pm_card_visa")

    second_hold = {"intent_id": "pi_card_2", "status": "requires_capture", "client_secret": ""}
    with patch("bountypay.utils.stripe_client.create_hold", return_value=second_hold) as second:
        result = escrow.create_escrow(users.poster, bounty_id, 1500, idempotency_key="esc-card", payment_method="pm_card_visa")

    assert first.call_args.kwargs["idempotency_key"] == f"hold:bounty:{bounty_id}:0"
    assert second.call_args.kwargs["idempotency_key"] == f"hold:bounty:{bounty_id}:1"
    assert result["bounty"]["escrow_state"] == "held"
    assert result["bounty"]["payment_reference"] == "pi_card_2"
    assert _kinds(bounty_id) == ["deposit", "escrow_hold"]


def test_cancelled_intent_is_not_accepted_as_a_hold(users, make_bounty, db):
    bounty_id = make_bounty(users.poster, 1500)
    dead = {"intent_id": "pi_dead", "status": "canceled", "client_secret": ""}
    with patch("bountypay.utils.stripe_client.create_hold", return_value=dead):
        with pytest.raises(ExternalServiceError):
            escrow.create_escrow(users.poster, bounty_id, 1500, payment_method="pm_card_visa")

    b = _bounty(db, bounty_id)
    assert (b.escrow_state, b.payment_reference) == ("none", None)
    assert WalletTxn.query.count() == 0


def test_zero_fee_writes_no_fee_entry(app, users, funded):
    app.config["PLATFORM_FEE_PERCENT"] = "0"
    escrow.release_escrow(users.poster, funded)

    assert _kinds(funded) == ["escrow_hold", "release"]
    assert ledger.get_balance(users.hunter) == 5000
    assert ledger.get_balance(users.platform) == 0


def test_release_needs_a_platform_account(db, fund, make_bounty):
    poster = User(name="Poster", email="poster@example.com")
    hunter = User(name="Hunter", email="hunter@example.com")
    db.session.add_all([poster, hunter])
    db.session.commit()
    poster_id, hunter_id = poster.id, hunter.id

    fund(poster_id, 5000)
    bounty_id = make_bounty(poster_id, 5000)
    escrow.create_escrow(poster_id, bounty_id, 5000)
    escrow.accept_bounty(hunter_id, bounty_id)

    with pytest.raises(ExternalServiceError):
        escrow.release_escrow(poster_id, bounty_id)

    b = _bounty(db, bounty_id)
    assert (b.status, b.escrow_state) == ("in_progress", "held")
    assert _kinds(bounty_id) == ["escrow_hold"]
    assert ledger.get_balance(poster_id) == 0
