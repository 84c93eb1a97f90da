import hashlib
import hmac
from typing import Optional

from .errors import InvalidSignature


def compute_webhook_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: Optional[str],
    raw_body: bytes,
    presented: Optional[str],
    *,
    required: bool = False,
) -> bool:
    """
    Returns True when the body was verified, False when the integration has no
    secret and signatures are not required. Raises InvalidSignature otherwise.

    A configured secret always requires a signature: a missing header is treated
    the same as a wrong one.
    """
    secret = (secret or "").strip()
    if not secret:
        if required:
            raise InvalidSignature("webhook secret not configured for this integration")
        return False
    sig = (presented or "").strip().lower()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]
    if not sig:
        raise InvalidSignature("missing webhook signature")
    expected = compute_webhook_signature(secret, raw_body)
    if not hmac.compare_digest(sig, expected):
        raise InvalidSignature("invalid webhook signature")
    return True


def event_key_for(raw_body: bytes, event_id: Optional[str] = None) -> str:
    eid = (event_id or "").strip()
    if eid:
        return f"id:{eid}"
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()
