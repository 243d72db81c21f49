"""GitHub webhook HMAC-SHA256 signature verification."""

import hmac
import hashlib
from typing import Optional

_PREFIX = "sha256="


def verify(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Verify a GitHub webhook HMAC-SHA256 signature.

    Must run on the exact raw request bytes, before any JSON parsing.

    Args:
        raw_body: Raw request body bytes
        signature_header: Value of X-Hub-Signature-256 header
        secret: Webhook secret configured in GitHub

    Returns:
        True if the signature is valid. False on a missing or malformed
        header, an empty secret, or a mismatch. Never raises.
    """
    if not secret:
        return False
    if not signature_header or not signature_header.startswith(_PREFIX):
        return False

    try:
        received_sig = signature_header[len(_PREFIX):].strip().lower().encode("ascii")
    except UnicodeEncodeError:
        return False
    if len(received_sig) != 64:
        return False

    expected_sig = hmac.new(
        secret.encode("utf-8"),
        raw_body or b"",
        hashlib.sha256
    ).hexdigest().encode("ascii")

    return hmac.compare_digest(expected_sig, received_sig)


def sign(raw_body: bytes, secret: str) -> str:
    """Build the X-Hub-Signature-256 header value for ``raw_body``."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"
