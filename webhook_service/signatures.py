"""
Webhook signature verification for Stripe, Paystack and Flutterwave.

Every verifier works on the exact raw request bytes and compares digests in
constant time. Any malformed input is a plain verification failure.
"""
import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

from common.schemas import Provider

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_TOLERANCE = 300


def _hex_digest(secret: str, message: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), message, digestmod).hexdigest()


def _matches(expected: str, candidate: str) -> bool:
    return hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8"))


def parse_stripe_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split `t=<ts>,v1=<sig>[,v1=<sig>...]` into the timestamp and v1 signatures."""
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_STRIPE_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    if not header or not secret:
        return False
    timestamp, signatures = parse_stripe_header(header)
    if timestamp is None or not signatures:
        return False

    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        logger.warning(f"Stripe signature timestamp {timestamp} outside {tolerance}s tolerance")
        return False

    expected = _hex_digest(secret, str(timestamp).encode("ascii") + b"." + raw_body, hashlib.sha256)
    return any(_matches(expected, candidate) for candidate in signatures)


def verify_paystack(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    if not header or not secret:
        return False
    expected = _hex_digest(secret, raw_body, hashlib.sha512)
    return _matches(expected, header)


def verify_flutterwave(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    if not header or not secret:
        return False
    expected = _hex_digest(secret, raw_body, hashlib.sha256)
    return _matches(expected, header)


def verify(
    provider: str,
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_STRIPE_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """True only when the header authenticates raw_body for the provider."""
    if provider == Provider.STRIPE.value:
        return verify_stripe(raw_body, signature_header, secret, tolerance, now)
    if provider == Provider.PAYSTACK.value:
        return verify_paystack(raw_body, signature_header, secret)
    if provider == Provider.FLUTTERWAVE.value:
        return verify_flutterwave(raw_body, signature_header, secret)
    return False
