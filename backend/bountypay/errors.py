"""Error taxonomy shared by the escrow, webhook and payout services.

Services raise these; the route layer never catches them itself. The handler
registered by ``register_error_handlers`` turns them into a stable JSON body
carrying the error kind and the request correlation id.
"""
from __future__ import annotations

import uuid

from flask import current_app, g, jsonify, request


class PaymentError(Exception):
    kind = "internal_error"
    status_code = 500
    # True for transient failures, which the webhook reconciler hands back to Stripe for redelivery.
    retryable = False

    def __init__(self, message: str = "", details: dict | None = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "error": self.kind,
            "message": self.message,
            "request_id": getattr(g, "request_id", None),
        }


class ValidationError(PaymentError):
    kind = "validation_error"
    status_code = 400


class Unauthorized(PaymentError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(PaymentError):
    kind = "forbidden"
    status_code = 403


class NotFound(PaymentError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier=None):
        suffix = f" {identifier}" if identifier is not None else ""
        super().__init__(f"{resource}{suffix} not found", {"resource": resource, "identifier": identifier})


class Conflict(PaymentError):
    kind = "conflict"
    status_code = 409


class InsufficientFunds(PaymentError):
    kind = "insufficient_funds"
    status_code = 422


class NotOnboarded(PaymentError):
    kind = "not_onboarded"
    status_code = 422


class ExternalServiceError(PaymentError):
    """A provider or backing store call failed. Safe to retry with the same idempotency key."""

    kind = "external_service_error"
    status_code = 502
    retryable = True

    def __init__(self, service: str, message: str = "", details: dict | None = None):
        super().__init__(message or f"{service} request failed", {"service": service, **(details or {})})
        self.service = service


class ProviderTimeout(ExternalServiceError):
    """The provider did not answer in time; the outcome of the call is unknown."""

    kind = "provider_timeout"
    status_code = 504


class InvalidSignature(PaymentError):
    kind = "invalid_signature"
    status_code = 400


def register_error_handlers(app) -> None:
    @app.before_request
    def _assign_request_id():
        rid = (request.headers.get("X-Request-Id") or "").strip()[:64]
        g.request_id = rid or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-Id"] = rid
        return response

    @app.errorhandler(PaymentError)
    def _payment_error(e: PaymentError):
        log = current_app.logger.warning if e.status_code < 500 else current_app.logger.error
        log(
            "request failed kind=%s path=%s request_id=%s details=%s",
            e.kind,
            request.path,
            getattr(g, "request_id", None),
            e.details,
        )
        return jsonify(e.to_dict()), e.status_code
