"""
Webhook signing.

The signature is the lowercase hex HMAC-SHA256 of the exact request body
bytes, keyed with the endpoint secret. Subscribers verify by recomputing it
over the raw body they received.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def serialize_payload(data: Any) -> bytes:
    """Compact, key-order-preserving JSON. These bytes are both signed and sent."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature or "")
