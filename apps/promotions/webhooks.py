"""
Order-completed webhook verification.

The payment subsystem signs the raw request body with HMAC-SHA256 using the
shared PROMOTIONS["ORDER_WEBHOOK_SECRET"] and sends it as
``X-Signature: sha256=<hex>``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from apps.common.types import Err, Ok, Result

SIGNATURE_HEADER = "X-Signature"
SIGNATURE_SCHEME = "sha256="


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _check_signature(secret: str, raw_body: bytes, header_value: str) -> Result[bytes, str]:
    if not secret:
        return Err("❌ Webhook secret not configured")
    if not header_value.startswith(SIGNATURE_SCHEME):
        return Err("❌ Missing or malformed signature")

    expected = compute_signature(secret, raw_body)
    provided = header_value[len(SIGNATURE_SCHEME) :].strip().lower()
    if not provided.isascii():
        return Err("❌ Missing or malformed signature")
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii")):
        return Err("❌ Invalid webhook signature")
    return Ok(raw_body)


def _decode_body(raw_body: bytes) -> Result[dict[str, Any], str]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return Err("❌ Body is not valid JSON")
    if not isinstance(payload, dict):
        return Err("❌ Body must be a JSON object")
    return Ok(payload)


def verify_order_webhook(secret: str, raw_body: bytes, header_value: str) -> Result[dict[str, Any], str]:
    """Verify the signature, then decode the body."""
    return _check_signature(secret, raw_body, header_value or "").and_then(_decode_body)
