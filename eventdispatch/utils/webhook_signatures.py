"""
Webhook signatures - sign outbound deliveries and verify inbound ones.

Header format: t=<unix_ts>,v1=<hex HMAC-SHA256 of "<unix_ts>.<body>">
The timestamp is part of the signed material so captured requests
cannot be replayed outside the tolerance window.
"""
import hashlib
import hmac
import logging
import secrets
import time
from typing import Optional, Union

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SECRET_BYTES = 24
DEFAULT_TOLERANCE_SECONDS = 600  # 10 minutes


def generate_webhook_secret() -> str:
    """Generate a new endpoint secret: whsec_ + 24 random bytes, hex-encoded."""
    return f"{SECRET_PREFIX}{secrets.token_hex(SECRET_BYTES)}"


def _as_text(body: Union[str, bytes]) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8")
    return body


def _compute_hmac(secret: str, timestamp: int, body: str) -> str:
    signed_payload = f"{timestamp}.{body}"
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign(secret: str, timestamp: int, body: Union[str, bytes]) -> str:
    """Return the X-Webhook-Signature header value for body at timestamp."""
    digest = _compute_hmac(secret, int(timestamp), _as_text(body))
    return f"t={int(timestamp)},v1={digest}"


def parse_signature_header(signature: str) -> tuple[Optional[int], Optional[str]]:
    """
    Split "t=...,v1=..." into (timestamp, hex digest).
    Unknown components are ignored; missing ones come back as None.
    """
    timestamp: Optional[int] = None
    digest: Optional[str] = None
    for part in signature.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, None
        elif key == "v1":
            digest = value
    return timestamp, digest


def verify(
    signature: str,
    secret: str,
    body: Union[str, bytes],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a t=/v1= signature header against body.
    Returns False for malformed headers, stale or future timestamps and
    digest mismatches. Never raises.
    """
    if not signature or not secret:
        return False

    timestamp, digest = parse_signature_header(signature)
    if timestamp is None or digest is None:
        logger.debug("Malformed webhook signature header")
        return False

    try:
        expected = _compute_hmac(secret, timestamp, _as_text(body))
    except UnicodeError:
        return False

    # Integer arithmetic: an absurdly large t= must not overflow a float
    current = int(time.time() if now is None else now)
    within_window = abs(current - timestamp) <= tolerance
    # Bytes comparison accepts non-ASCII input; it simply does not match
    matches = hmac.compare_digest(expected.encode("ascii"), digest.lower().encode("utf-8", "replace"))
    if not within_window:
        logger.debug("Webhook signature timestamp outside tolerance: t=%s", timestamp)
    return within_window and matches


def compute_payload_hash(body: Union[str, bytes]) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()
