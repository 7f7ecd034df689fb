"""HubSpot v3 webhook signature validation.

HubSpot signs each delivery with ``X-HubSpot-Signature-v3``: the base64
HMAC-SHA256 (keyed with the app's client secret) of
``method + uri + body + timestamp``, where ``timestamp`` is the
``X-HubSpot-Request-Timestamp`` header in epoch milliseconds. Deliveries
older than the allowed window are rejected to prevent replay.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time

import structlog

logger = structlog.get_logger(__name__)


def compute_signature(secret: str, method: str, uri: str, body: bytes, timestamp: str) -> str:
    message = method.upper().encode() + uri.encode() + body + timestamp.encode()
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(
    secret: str,
    *,
    method: str,
    uri: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    max_age_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Return True if the delivery is authentic and fresh."""
    if not signature or not timestamp:
        logger.warning("webhook.signature_missing")
        return False

    try:
        sent_at_ms = int(timestamp)
    except ValueError:
        logger.warning("webhook.timestamp_invalid", timestamp=timestamp)
        return False

    current_ms = (now if now is not None else time.time()) * 1000
    if current_ms - sent_at_ms > max_age_seconds * 1000:
        logger.warning("webhook.timestamp_expired", timestamp=timestamp)
        return False

    expected = compute_signature(secret, method, uri, body, timestamp)
    if not hmac.compare_digest(expected, signature):
        logger.warning("webhook.signature_mismatch")
        return False
    return True
