import json
import uuid
from types import SimpleNamespace

import pytest
from flask import g

from bountypay import create_app
from bountypay.config import TestConfig
from bountypay.extensions import db as _db
from bountypay.jwt_utils import create_access_token
from bountypay.models import Bounty, ConnectAccount, User
from bountypay.utils import ledger, stripe_client


@pytest.fixture
def app():
    app = create_app(config_object=TestConfig)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    # The app context stays pushed for the whole test, so each request would
    # reuse its `g` and Flask-Login's cached user; drop it per request.
    @app.before_request
    def _reset_login_user():
        g.pop("_login_user", None)

    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def users(app):
    poster = User(name="Poster", email="poster@example.com")
    hunter = User(name="Hunter", email="hunter@example.com")
    platform = User(name="Platform", email="platform@example.com", role="platform")
    _db.session.add_all([poster, hunter, platform])
    _db.session.commit()
    return SimpleNamespace(poster=poster.id, hunter=hunter.id, platform=platform.id)


@pytest.fixture
def auth_headers(app):
    def _headers(user_id, **extra):
        headers = {"Authorization": f"Bearer {create_access_token(user_id)}"}
        headers.update(extra)
        return headers
    return _headers


@pytest.fixture
def fund(app):
    """Credit a wallet with a completed deposit."""
    def _fund(user_id, amount, ref=None):
        return ledger.append_entry(
            user_id=user_id,
            kind="deposit",
            amount=amount,
            idempotency_key=ledger.deposit_key(ref or f"pi_seed_{uuid.uuid4().hex[:8]}"),
        )
    return _fund


@pytest.fixture
def make_bounty(app):
    def _make(poster_id, amount, *, is_for_honor=False, title="Fix the flaky build"):
        b = Bounty(poster_id=poster_id, title=title, amount=0 if is_for_honor else amount, is_for_honor=is_for_honor)
        _db.session.add(b)
        _db.session.commit()
        return b.id
    return _make


@pytest.fixture
def onboard(app):
    def _onboard(user_id, account_id="acct_hunter", enabled=True):
        row = ConnectAccount(user_id=user_id, external_account_id=account_id, payouts_enabled=enabled, details_submitted=enabled)
        _db.session.add(row)
        _db.session.commit()
        return row.id
    return _onboard


@pytest.fixture
def make_event():
    def _event(event_type, obj, event_id=None):
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "type": event_type,
            "data": {"object": obj},
        }
    return _event


@pytest.fixture
def post_event(client):
    def _post(event, secret=TestConfig.STRIPE_WEBHOOK_SECRET, timestamp=None, signature=None):
        raw = json.dumps(event).encode("utf-8")
        sig = signature if signature is not None else stripe_client.sign_payload(raw, secret, timestamp)
        return client.post(
            "/api/webhooks/stripe",
            data=raw,
            headers={"Stripe-Signature": sig},
            content_type="application/json",
        )
    return _post
