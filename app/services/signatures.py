"""Webhook HMAC-SHA256 signature verification."""

import hashlib
import hmac
from typing import Mapping, Optional

CARRIER_SIGNATURE_HEADERS = ("x-shiprocket-signature", "anx-api-key")
GATEWAY_SIGNATURE_HEADER = "x-razorpay-signature"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature.strip())


def carrier_signature_valid(secret: str, body: bytes, headers: Mapping[str, str]) -> bool:
    """Carrier signing is optional: with no secret configured every push is accepted."""
    if not secret:
        return True
    signature = next((headers.get(h) for h in CARRIER_SIGNATURE_HEADERS if headers.get(h)), None)
    return verify_signature(secret, body, signature)


def gateway_signature_valid(secret: str, body: bytes, headers: Mapping[str, str]) -> bool:
    if not secret:
        return True
    return verify_signature(secret, body, headers.get(GATEWAY_SIGNATURE_HEADER))
