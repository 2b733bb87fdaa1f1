"""
HMAC-SHA256 helpers used by OTP tokens and webhook verification.
"""

import hmac
import hashlib
from typing import Optional, Union

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def hmac_sha256_hex(secret: Union[str, bytes], message: Union[str, bytes]) -> str:
    """Lowercase hex HMAC-SHA256 of `message` keyed by `secret`."""
    return hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).hexdigest()


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    return hmac.compare_digest(_to_bytes(a), _to_bytes(b))


def sign_payload(secret: str, raw_body: bytes) -> str:
    """Signature header value for a raw webhook body."""
    return SIGNATURE_PREFIX + hmac_sha256_hex(secret, raw_body)


def verify_payload_signature(
    secret: str,
    raw_body: bytes,
    signature_header: Optional[str],
) -> bool:
    """
    Check a webhook signature over the raw, unparsed body.

    Accepts the bare hex digest or one prefixed with ``sha256=``.
    A missing secret or header never verifies.
    """
    if not secret or not signature_header:
        return False

    supplied = signature_header.strip()
    if supplied.startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]

    expected = hmac_sha256_hex(secret, raw_body)
    return constant_time_equals(expected, supplied.lower())
