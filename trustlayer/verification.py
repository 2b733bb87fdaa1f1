"""
Verification Token Service.

Issues and checks one-time codes that prove control of an email address or
phone number. Nothing is stored server-side: the token handed to the client
carries the identifier, the expiry and an HMAC that binds the original code.
At confirmation time the HMAC is recomputed with the code the user supplied,
so a wrong code and a tampered token fail the same way.

Tokens are not single-use. A valid (token, code) pair can be replayed until it
expires; callers that need single-use semantics keep a short-lived cache of
consumed token signatures with a TTL equal to the token's own expiry.
"""

import re
import json
import base64
import logging
import secrets
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from trustlayer.errors import InvalidCode, MalformedToken, TokenExpired, ValidationError
from trustlayer.signing import constant_time_equals, hmac_sha256_hex

logger = logging.getLogger(__name__)

CODE_MIN = 100000
CODE_SPAN = 900000
DEFAULT_TTL = timedelta(minutes=10)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?\d{7,15}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def normalize_identifier(identifier: str) -> str:
    """Strip and validate an email address or phone number."""
    value = (identifier or "").strip()
    if not value:
        raise ValidationError("Email or phone number is required")
    if EMAIL_RE.match(value):
        return value
    compact = re.sub(r"[\s\-()]", "", value)
    if PHONE_RE.match(compact):
        return compact
    raise ValidationError("Identifier must be an email address or phone number")


def is_email(identifier: str) -> bool:
    return bool(EMAIL_RE.match(identifier))


@dataclass(frozen=True)
class Challenge:
    code: str
    token: str
    expires_at: datetime


class VerificationTokenService:
    """Stateless OTP issuance and verification."""

    def __init__(
        self,
        secret: str,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not secret:
            raise ValueError("OTP secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self._clock = clock

    def _sign(self, identifier: str, code: str, expires_at_ms: int) -> str:
        return hmac_sha256_hex(self._secret, f"{identifier}:{code}:{expires_at_ms}")

    @staticmethod
    def generate_code() -> str:
        return str(CODE_MIN + secrets.randbelow(CODE_SPAN))

    def issue_challenge(self, identifier: str) -> Challenge:
        """Create a code for out-of-band delivery and the token that binds it."""
        code = self.generate_code()
        expires_at = self._clock() + self.ttl
        expires_at_ms = to_epoch_ms(expires_at)

        payload = {
            "identifier": identifier,
            "expiresAt": expires_at_ms,
            "signature": self._sign(identifier, code, expires_at_ms),
        }
        token = base64.b64encode(
            json.dumps(payload, separators=(",", ":")).encode("utf-8")
        ).decode("ascii")

        logger.info("Issued verification challenge, expires at %s", expires_at.isoformat())
        return Challenge(code=code, token=token, expires_at=expires_at)

    @staticmethod
    def decode_token(token: str) -> dict:
        try:
            raw = base64.b64decode(token, validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError, TypeError) as e:
            raise MalformedToken("Token could not be decoded") from e

        # Non-canonical padding bits would otherwise decode to the same payload
        if base64.b64encode(raw).decode("ascii") != token:
            raise MalformedToken("Token is not canonically encoded")

        if not isinstance(payload, dict):
            raise MalformedToken("Token payload is not an object")

        identifier = payload.get("identifier")
        expires_at = payload.get("expiresAt")
        signature = payload.get("signature")
        if not isinstance(identifier, str) or not identifier:
            raise MalformedToken("Token is missing identifier")
        # bool is an int subclass; reject it explicitly
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            raise MalformedToken("Token is missing expiresAt")
        if not isinstance(signature, str) or not signature:
            raise MalformedToken("Token is missing signature")
        return payload

    def verify_challenge(self, token: str, supplied_code: str) -> str:
        """Return the verified identifier or raise a VerificationError."""
        payload = self.decode_token(token)
        identifier = payload["identifier"]
        expires_at_ms = payload["expiresAt"]

        if to_epoch_ms(self._clock()) > expires_at_ms:
            raise TokenExpired("Verification code has expired")

        expected = self._sign(identifier, str(supplied_code).strip(), expires_at_ms)
        if not constant_time_equals(expected, payload["signature"]):
            raise InvalidCode("Verification code does not match")

        return identifier
