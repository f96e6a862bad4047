from abc import ABC, abstractmethod
from typing import Optional, Tuple
import base64
import hashlib
import hmac
import json
import time

import stripe
from loguru import logger

from .config import STRIPE_WEBHOOK_SECRET, PAYPAL_WEBHOOK_SECRET, MOCK_SECRET
from .errors import ValidationError

log = logger.bind(component="providers")


def _b64_hmac(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def _parse_json(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return event


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    provider: str

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # (event_id, event_type)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, str]:
        ...


# ----------------------------
# Stripe
# ----------------------------
class StripeAdapter(PaymentAdapter):
    """
    Stripe-Signature: t=<unix>,v1=<hex hmac of "<t>.<body>">, checked by
    the stripe SDK against the endpoint secret.
    """

    provider = "stripe"

    def __init__(self, secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
                 tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> None:
        self.secret = secret
        self.tolerance = tolerance

    @staticmethod
    def sign(payload: bytes, secret: str, ts: Optional[int] = None) -> str:
        ts = int(ts if ts is not None else time.time())
        signed = f"{ts}.".encode() + payload
        mac = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={mac}"

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if not self.secret:
            raise ValidationError("Stripe webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(
                payload, headers.get("stripe-signature") or "", self.secret,
                tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            log.warning(f"stripe signature rejected: {e}")
            raise ValidationError("Invalid signature")
        except ValueError:
            raise ValidationError("Invalid JSON")
        # handlers read plain dicts, not StripeObjects
        return _parse_json(payload)

    def event_ids(self, event: dict) -> Tuple[str, str]:
        return event.get("id", ""), event.get("type", "")


# ----------------------------
# PayPal
# ----------------------------
class PayPalAdapter(PaymentAdapter):
    """
    HMAC-SHA256 (base64) of the body in `paypal-transmission-sig`. Stands in
    for PayPal's certificate-chain verification, which needs their API.
    """

    provider = "paypal"

    def __init__(self, secret: Optional[str] = PAYPAL_WEBHOOK_SECRET) -> None:
        self.secret = secret

    @staticmethod
    def sign(payload: bytes, secret: str) -> str:
        return _b64_hmac(secret, payload)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if not self.secret:
            raise ValidationError("PayPal webhook secret is not configured")
        sig = headers.get("paypal-transmission-sig")
        if not sig or not hmac.compare_digest(_b64_hmac(self.secret, payload),
                                              sig):
            raise ValidationError("Invalid signature")
        return _parse_json(payload)

    def event_ids(self, event: dict) -> Tuple[str, str]:
        return event.get("id", ""), event.get("event_type", "")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """Local stand-in provider: {"type": "payment.<kind>", "order_id", ...}."""

    provider = "mock"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    @staticmethod
    def sign(payload: bytes, secret: str = MOCK_SECRET) -> str:
        return _b64_hmac(secret, payload)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = _b64_hmac(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        return _parse_json(payload)

    def event_ids(self, event: dict) -> Tuple[str, str]:
        return event.get("idempotency_key", ""), event.get("type", "")


ADAPTERS = {
    "stripe": StripeAdapter,
    "paypal": PayPalAdapter,
    "mock": MockPay,
}
