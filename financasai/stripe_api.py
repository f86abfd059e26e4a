"""Stripe REST API wrapper (form-encoded, bearer auth) + webhook signature checks."""

import hashlib
import hmac
import json
import logging
import time

import httpx

from financasai.config import STRIPE_SECRET_KEY
from financasai.errors import BillingError, ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE = 300  # seconds


def _headers() -> dict:
    if not STRIPE_SECRET_KEY:
        raise BillingError("STRIPE_SECRET_KEY is not set")
    return {"Authorization": f"Bearer {STRIPE_SECRET_KEY}"}


def _encode(params: dict, prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracket form encoding."""
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_encode(value, name))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(_encode(item, f"{name}[{i}]"))
                else:
                    pairs.append((f"{name}[{i}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def _get(path: str, params: list[tuple[str, str]] | dict | None = None) -> dict:
    resp = httpx.get(f"{BASE_URL}{path}", headers=_headers(), params=params)
    if resp.status_code != 200:
        logger.error("Stripe GET %s failed: %s %s", path, resp.status_code, resp.text)
        raise BillingError(f"Stripe request failed ({resp.status_code})")
    return resp.json()


def _post(path: str, params: dict) -> dict:
    resp = httpx.post(f"{BASE_URL}{path}", headers=_headers(), data=_encode(params))
    if resp.status_code != 200:
        logger.error("Stripe POST %s failed: %s %s", path, resp.status_code, resp.text)
        raise BillingError(f"Stripe request failed ({resp.status_code})")
    return resp.json()


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

def list_customers(email: str, limit: int = 1) -> list[dict]:
    return _get("/customers", {"email": email, "limit": limit}).get("data", [])


def retrieve_customer(customer_id: str) -> dict:
    return _get(f"/customers/{customer_id}")


def list_subscriptions(customer_id: str, status: str = "active", limit: int = 1) -> list[dict]:
    params = {"customer": customer_id, "status": status, "limit": limit}
    return _get("/subscriptions", params).get("data", [])


def retrieve_subscription(subscription_id: str, expand: list[str] | None = None) -> dict:
    params = [("expand[]", e) for e in (expand or [])]
    return _get(f"/subscriptions/{subscription_id}", params)


def create_checkout_session(params: dict) -> dict:
    session = _post("/checkout/sessions", params)
    logger.info("Created checkout session %s", session.get("id"))
    return session


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def verify_webhook_signature(
    payload: bytes, signature_header: str, secret: str, tolerance: int = SIGNATURE_TOLERANCE,
    now: float | None = None,
) -> bool:
    """Check a Stripe-Signature header (t=...,v1=...) against the raw body."""
    if not signature_header or not secret:
        return False
    timestamp = ""
    signatures: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        return False
    try:
        age = (now if now is not None else time.time()) - int(timestamp)
    except ValueError:
        return False
    if tolerance and abs(age) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance: %ss", int(age))
        return False

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


def construct_event(payload: bytes, signature_header: str, secret: str) -> dict:
    """Parse a webhook body. Verifies the signature when a secret is configured."""
    if secret:
        if not verify_webhook_signature(payload, signature_header, secret):
            raise ValidationError("Invalid signature")
    else:
        logger.warning("Stripe webhook parsed without signature verification")
    try:
        return json.loads(payload)
    except ValueError:
        raise ValidationError("Invalid payload")
