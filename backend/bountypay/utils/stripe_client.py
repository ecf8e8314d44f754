"""Thin Stripe REST client over ``requests``.

Every fund-moving call carries a provider idempotency key and a bounded
timeout. A read timeout means the request may have landed, so it surfaces as
ProviderTimeout (unknown outcome); anything that certainly failed is an
ExternalServiceError. Provider error text is logged, never returned.
"""
from __future__ import annotations

import hashlib
import hmac
import time

import requests
from flask import current_app

from bountypay.errors import ExternalServiceError, ProviderTimeout


def _secret() -> str:
    return (current_app.config.get("STRIPE_SECRET_KEY") or "").strip()


def _url(path: str) -> str:
    base = (current_app.config.get("STRIPE_API_BASE") or "https://api.stripe.com").rstrip("/")
    return f"{base}{path}"


def _metadata(meta: dict | None) -> dict:
    return {f"metadata[{k}]": str(v) for k, v in (meta or {}).items() if v is not None}


def _classify(status: int, err: dict) -> str:
    code = err.get("code") or err.get("decline_code") or ""
    if code in ("card_declined", "expired_card", "insufficient_funds", "incorrect_cvc"):
        return "Payment method was declined"
    if status == 429:
        return "Payment provider is rate limiting requests"
    if status >= 500:
        return "Payment provider is unavailable"
    return "Payment provider rejected the request"


def _request(method: str, path: str, data: dict | None = None, idempotency_key: str | None = None) -> dict:
    secret = _secret()
    if not secret:
        raise ExternalServiceError("stripe", "Payment provider is not configured")
    headers = {}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key[:255]
    timeout = int(current_app.config.get("PROVIDER_TIMEOUT_SECONDS") or 20)
    try:
        r = requests.request(method, _url(path), auth=(secret, ""), data=data, headers=headers, timeout=timeout)
    except requests.ConnectTimeout as e:
        # Never connected, so nothing was sent.
        raise ExternalServiceError("stripe", "Payment provider is unreachable") from e
    except requests.Timeout as e:
        current_app.logger.warning("stripe timeout method=%s path=%s key=%s", method, path, idempotency_key)
        raise ProviderTimeout("stripe", "Payment provider timed out; outcome unknown", {"path": path}) from e
    except requests.RequestException as e:
        raise ExternalServiceError("stripe", "Payment provider is unreachable") from e

    try:
        body = r.json() if r.content else {}
    except ValueError:
        body = {}
    if 200 <= r.status_code < 300:
        return body

    err = body.get("error") or {}
    current_app.logger.warning(
        "stripe error method=%s path=%s status=%s code=%s type=%s message=%s",
        method, path, r.status_code, err.get("code"), err.get("type"), err.get("message"),
    )
    raise ExternalServiceError("stripe", _classify(r.status_code, err), {"status": r.status_code, "code": err.get("code")})


def create_hold(amount: int, *, metadata: dict, idempotency_key: str, payment_method: str | None = None, customer: str | None = None) -> dict:
    """Authorise ``amount`` on a card without capturing it."""
    data = {
        "amount": int(amount),
        "currency": current_app.config.get("CURRENCY", "usd"),
        "capture_method": "manual",
        **_metadata(metadata),
    }
    if payment_method:
        data["payment_method"] = payment_method
        data["confirm"] = "true"
        data["automatic_payment_methods[enabled]"] = "true"
        data["automatic_payment_methods[allow_redirects]"] = "never"
    if customer:
        data["customer"] = customer
    j = _request("POST", "/v1/payment_intents", data, idempotency_key)
    return {"intent_id": j.get("id", ""), "status": j.get("status", ""), "client_secret": j.get("client_secret", "")}


def create_charge(amount: int, *, metadata: dict, idempotency_key: str, customer: str | None = None) -> dict:
    """Automatic-capture intent used for wallet top-ups."""
    data = {
        "amount": int(amount),
        "currency": current_app.config.get("CURRENCY", "usd"),
        "automatic_payment_methods[enabled]": "true",
        **_metadata(metadata),
    }
    if customer:
        data["customer"] = customer
    j = _request("POST", "/v1/payment_intents", data, idempotency_key)
    return {"intent_id": j.get("id", ""), "status": j.get("status", ""), "client_secret": j.get("client_secret", "")}


def capture_hold(intent_id: str, *, idempotency_key: str) -> dict:
    j = _request("POST", f"/v1/payment_intents/{intent_id}/capture", {}, idempotency_key)
    return {"intent_id": j.get("id", intent_id), "status": j.get("status", ""), "captured_amount": int(j.get("amount_received") or 0)}


def retrieve_intent(intent_id: str) -> dict:
    j = _request("GET", f"/v1/payment_intents/{intent_id}")
    return {"intent_id": j.get("id", intent_id), "status": j.get("status", ""), "amount_received": int(j.get("amount_received") or 0)}


def cancel_hold(intent_id: str, *, idempotency_key: str, reason: str = "requested_by_customer") -> dict:
    """Release an uncaptured authorisation. Stripe refuses refunds until a charge exists."""
    j = _request("POST", f"/v1/payment_intents/{intent_id}/cancel", {"cancellation_reason": reason}, idempotency_key)
    return {"intent_id": j.get("id", intent_id), "status": j.get("status", "")}


def refund(intent_id: str, *, idempotency_key: str) -> dict:
    """Refund a captured intent."""
    j = _request("POST", "/v1/refunds", {"payment_intent": intent_id}, idempotency_key)
    return {"refund_id": j.get("id", ""), "status": j.get("status", "")}


def create_transfer(destination: str, amount: int, *, metadata: dict, idempotency_key: str) -> dict:
    data = {
        "amount": int(amount),
        "currency": current_app.config.get("CURRENCY", "usd"),
        "destination": destination,
        **_metadata(metadata),
    }
    j = _request("POST", "/v1/transfers", data, idempotency_key)
    return {"transfer_id": j.get("id", "")}


def retrieve_account(account_id: str) -> dict:
    j = _request("GET", f"/v1/accounts/{account_id}")
    return {
        "account_id": j.get("id", account_id),
        "payouts_enabled": bool(j.get("payouts_enabled")),
        "details_submitted": bool(j.get("details_submitted")),
    }


def sign_payload(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value for ``raw_body``."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str, *, tolerance: int = 300, now: int | None = None) -> bool:
    if not secret or not signature_header:
        return False
    ts = None
    candidates = []
    for part in signature_header.split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            try:
                ts = int(v)
            except ValueError:
                return False
        elif k == "v1" and v:
            candidates.append(v)
    if ts is None or not candidates:
        return False
    current = int(now if now is not None else time.time())
    if abs(current - ts) > int(tolerance):
        return False
    expected = sign_payload(raw_body, secret, ts).split("v1=", 1)[1]
    return any(hmac.compare_digest(expected, c) for c in candidates)
