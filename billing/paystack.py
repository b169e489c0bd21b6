from __future__ import annotations

import hashlib
import hmac

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"


def compute_paystack_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw request body keyed by the account secret key."""

    return hmac.new(str(secret).encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_paystack_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = compute_paystack_signature(body, secret)
    return hmac.compare_digest(expected, str(signature).strip().lower())
