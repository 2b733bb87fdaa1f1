"""Error taxonomy shared by verification and payments."""

from typing import Optional


class TrustLayerError(Exception):
    """Base class for every error raised by this package."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(TrustLayerError):
    """Malformed or missing input."""

    status_code = 400


class VerificationError(TrustLayerError):
    """A verification attempt failed; the user must restart the challenge."""

    status_code = 400
    # Never tell the client which check failed
    public_message = "Invalid or expired verification code"


class MalformedToken(VerificationError):
    pass


class TokenExpired(VerificationError):
    pass


class InvalidCode(VerificationError):
    pass


class SignatureError(TrustLayerError):
    """Webhook signature did not verify."""

    status_code = 400


class ProcessorError(TrustLayerError):
    """Upstream payment processor failure."""

    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class PolicyViolation(TrustLayerError):
    """Operation not allowed in the order's current payment state."""

    status_code = 409


class NotRefundable(PolicyViolation):
    pass


class OrderNotFound(TrustLayerError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class DeliveryError(TrustLayerError):
    """Message dispatch (email/SMS) failed."""

    status_code = 502
