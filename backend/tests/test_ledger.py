from datetime import datetime, timedelta

import pytest

from bountypay.errors import Conflict, ExternalServiceError, ValidationError
from bountypay.models import User, WalletTxn
from bountypay.models.wallet_txn import LedgerImmutableError
from bountypay.utils import ledger
from bountypay.utils.ledger import Entry
from bountypay.utils.reserves import balance_summary, get_available_balance, trailing_volume


def test_balance_is_the_sum_of_completed_entries(users, fund, db):
    fund(users.poster, 3000)
    fund(users.poster, 2000)
    ledger.append_entry(user_id=users.poster, kind="withdrawal", amount=1200, idempotency_key="w:1")
    db.session.add(WalletTxn(user_id=users.poster, kind="deposit", amount=999, status="pending", idempotency_key="pending:1"))
    db.session.commit()
    assert ledger.get_balance(users.poster) == 3800


def test_kind_sets_the_sign(users):
    hold = ledger.append_entry(user_id=users.poster, kind="escrow_hold", amount=500, idempotency_key="hold:x")
    credit = ledger.append_entry(user_id=users.hunter, kind="release", amount=450, idempotency_key="rel:x")
    assert hold.amount == -500
    assert credit.amount == 450


def test_entries_cannot_be_updated(users, fund, db):
    row = fund(users.poster, 1000)
    row.amount = 5
    with pytest.raises(LedgerImmutableError):
        db.session.commit()
    db.session.rollback()
    assert ledger.get_balance(users.poster) == 1000


def test_replaying_a_batch_returns_the_first_write(users):
    batch = [
        Entry(user_id=users.hunter, kind="release", amount=900, idempotency_key="settle:bounty:77"),
        Entry(user_id=users.platform, kind="platform_fee", amount=100, idempotency_key="fee:bounty:77"),
    ]
    first = ledger.append_entries(batch)
    again = ledger.append_entries(batch)
    assert [r.id for r in first] == [r.id for r in again]
    assert WalletTxn.query.count() == 2


def test_settlement_key_admits_only_one_outcome(users):
    ledger.append_entry(user_id=users.poster, kind="refund", amount=1000, idempotency_key="settle:bounty:5")
    with pytest.raises(Conflict):
        ledger.append_entries([
            Entry(user_id=users.hunter, kind="release", amount=900, idempotency_key="settle:bounty:5"),
            Entry(user_id=users.platform, kind="platform_fee", amount=100, idempotency_key="fee:bounty:5"),
        ])
    assert WalletTxn.query.filter_by(idempotency_key="fee:bounty:5").count() == 0


def test_negative_magnitudes_are_rejected(users):
    with pytest.raises(ValidationError):
        ledger.append_entry(user_id=users.poster, kind="deposit", amount=-1, idempotency_key="neg")
    with pytest.raises(ValidationError):
        ledger.append_entry(user_id=users.poster, kind="bonus", amount=1, idempotency_key="bonus")


def test_list_entries_filters_by_kind(users, fund):
    fund(users.poster, 100)
    ledger.append_entry(user_id=users.poster, kind="withdrawal", amount=40, idempotency_key="w:2")
    kinds = [r.kind for r in ledger.list_entries(users.poster, kind="withdrawal")]
    assert kinds == ["withdrawal"]
    assert len(ledger.list_entries(users.poster)) == 2


def test_platform_account_is_resolved_by_role(users):
    assert ledger.platform_user_id() == users.platform


def test_platform_account_is_never_guessed(app, db):
    first = User(name="First poster", email="first@example.com")
    db.session.add(first)
    db.session.commit()

    with pytest.raises(ExternalServiceError):
        ledger.platform_user_id()

    app.config["PLATFORM_USER_ID"] = "999"
    with pytest.raises(ExternalServiceError):
        ledger.platform_user_id()

    app.config["PLATFORM_USER_ID"] = str(first.id)
    assert ledger.platform_user_id() == first.id


def test_low_risk_has_no_reserve(users, fund):
    fund(users.poster, 10000)
    assert get_available_balance(users.poster) == 10000


def test_reserve_is_a_share_of_trailing_volume(users, fund, db):
    db.session.get(User, users.poster).risk_level = "medium"
    db.session.commit()
    fund(users.poster, 10000)
    summary = balance_summary(users.poster)
    assert summary["balance"] == 10000
    assert summary["reserve"] == 1000
    assert summary["available"] == 9000


def test_reserve_is_capped_at_the_balance(users, fund, db):
    db.session.get(User, users.poster).risk_level = "high"
    db.session.commit()
    fund(users.poster, 10000)
    ledger.append_entry(user_id=users.poster, kind="withdrawal", amount=9500, idempotency_key="w:3")
    # volume 19500 at 20% is 3900, more than the 500 left
    summary = balance_summary(users.poster)
    assert summary["reserve"] == 500
    assert summary["available"] == 0


def test_entries_outside_the_window_do_not_count(users, db):
    db.session.add(WalletTxn(
        user_id=users.poster, kind="deposit", amount=8000, idempotency_key="old:1",
        created_at=datetime.utcnow() - timedelta(days=45),
    ))
    db.session.commit()
    assert trailing_volume(users.poster) == 0
    assert trailing_volume(users.poster, days=60) == 8000


def test_negative_balance_has_nothing_available(users):
    ledger.append_entry(user_id=users.poster, kind="withdrawal", amount=300, idempotency_key="cb:1")
    assert ledger.get_balance(users.poster) == -300
    assert get_available_balance(users.poster) == 0
