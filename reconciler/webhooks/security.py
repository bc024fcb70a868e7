import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)

ALLOWED_DRIFT_SECONDS = 300  # 5 minutes
SIGNATURE_SCHEME = "v1"


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    """HMAC-SHA256 over ``b"<timestamp>." + payload``, hex encoded."""
    signed_payload = str(timestamp).encode() + b"." + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: int = None) -> str:
    """Build a header in the processor's ``t=...,v1=...`` format."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, timestamp, secret)}"


def parse_signature_header(header: str):
    """
    Split ``t=1700000000,v1=abc,v1=def`` into (timestamp, [signatures]).
    Raises ValueError on anything malformed.
    """
    timestamp = None
    signatures = []

    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not value:
            raise ValueError(f"Malformed signature header item: {item!r}")
        if key == "t":
            timestamp = int(value)
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise ValueError("Signature header is missing timestamp or signature")

    return timestamp, signatures


def verify_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    tolerance: int = ALLOWED_DRIFT_SECONDS,
    now: int = None,
) -> bool:
    """
    Check that ``payload`` was signed by the processor.

    Works on the raw request bytes. Any problem (missing header or secret,
    unparseable header, expired timestamp, mismatch) returns False.
    """
    if not signature_header or not secret or payload is None:
        return False

    try:
        timestamp, signatures = parse_signature_header(signature_header)
    except ValueError as e:
        logger.warning("Rejected webhook with unparseable signature header", extra={"error": str(e)})
        return False

    if now is None:
        now = int(time.time())

    if tolerance and abs(now - timestamp) > tolerance:
        logger.warning(
            "Rejected webhook with expired timestamp",
            extra={"timestamp": timestamp, "drift_seconds": now - timestamp},
        )
        return False

    expected_signature = compute_signature(payload, timestamp, secret).encode()

    # Check every candidate; a match on any of them is enough. Compared as
    # bytes since header values may carry non-ASCII characters.
    matched = False
    for candidate in signatures:
        if hmac.compare_digest(expected_signature, candidate.encode("utf-8", "surrogateescape")):
            matched = True

    if not matched:
        logger.warning("Rejected webhook with invalid signature")
    return matched
