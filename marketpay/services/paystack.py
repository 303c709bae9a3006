import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation

import requests
from flask import current_app
from paystackapi.paystack import Paystack

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money"]


class GatewayError(Exception):
    """The gateway refused a request or answered with ``status: false``."""

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}


class GatewayNotConfigured(RuntimeError):
    pass


def to_minor_units(amount):
    """Convert a major-unit amount (cedis, naira) to the integer the gateway expects."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError("Invalid amount")
    if not value.is_finite():
        raise ValueError("Invalid amount")
    return int((value * 100).to_integral_value())


def compute_signature(body, secret):
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(body, signature, secret):
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature)


class PaystackClient:
    def __init__(self, secret_key, public_key=None):
        if not secret_key:
            raise GatewayNotConfigured("Paystack not configured")
        self.public_key = public_key
        self.paystack = Paystack(secret_key=secret_key)

    @classmethod
    def from_app(cls, app=None):
        app = app or current_app
        return cls(
            app.config.get("PAYSTACK_SECRET_KEY"),
            app.config.get("PAYSTACK_PUBLIC_KEY"),
        )

    def initialize(self, email, amount, reference, currency, metadata,
                   callback_url=None, channels=None):
        params = {
            "email": email,
            "amount": to_minor_units(amount),
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
            "channels": channels or DEFAULT_CHANNELS,
        }
        if callback_url:
            params["callback_url"] = callback_url
        return self._call("initialize", self.paystack.transaction.initialize, **params)

    def verify(self, reference):
        return self._call("verify", self.paystack.transaction.verify, reference=reference)

    def _call(self, operation, method, **kwargs):
        try:
            response = method(**kwargs)
        except requests.HTTPError as e:
            payload = {}
            if e.response is not None:
                try:
                    payload = e.response.json()
                except ValueError:
                    payload = {}
            message = payload.get("message") or str(e)
            logger.warning("Paystack rejected %s: %s", operation, message)
            raise GatewayError(message, payload)

        if not isinstance(response, dict) or not response.get("status"):
            payload = response if isinstance(response, dict) else {}
            message = payload.get("message") or "Gateway request failed"
            logger.warning("Paystack returned failure for %s: %s", operation, message)
            raise GatewayError(message, payload)
        return response
