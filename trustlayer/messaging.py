"""
Message dispatch for OTP codes and payment notices.
Email goes through SendGrid; without an API key messages are only logged.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from trustlayer.processor import from_minor_units
from trustlayer.verification import is_email

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: Optional[str] = None


class MessageDispatcher:
    """Delivers rendered content to an email address or phone number."""

    def send(self, identifier: str, message: RenderedMessage) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LogDispatcher(MessageDispatcher):
    """Development dispatcher: writes the message to the log."""

    def send(self, identifier: str, message: RenderedMessage) -> bool:
        logger.info("[DEV] Message to %s: %s | %s", identifier, message.subject, message.text)
        return True


class SendGridDispatcher(MessageDispatcher):
    """Email dispatcher using the SendGrid v3 API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "Marketplace",
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._client = client or httpx.Client(timeout=10.0)

        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def send(self, identifier: str, message: RenderedMessage) -> bool:
        content = [{"type": "text/plain", "value": message.text}]
        if message.html:
            content.append({"type": "text/html", "value": message.html})

        payload = {
            "personalizations": [{"to": [{"email": identifier}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject,
            "content": content,
        }

        try:
            response = self._client.post(SENDGRID_URL, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            logger.error("SendGrid request failed: %s", e)
            return False

        if not response.is_success:
            logger.error("SendGrid error %s: %s", response.status_code, response.text)
            return False
        return True

    def close(self) -> None:
        self._client.close()


class RoutingDispatcher(MessageDispatcher):
    """Sends to email addresses and phone numbers through separate channels."""

    def __init__(self, email: MessageDispatcher, sms: MessageDispatcher):
        self.email = email
        self.sms = sms

    def send(self, identifier: str, message: RenderedMessage) -> bool:
        channel = self.email if is_email(identifier) else self.sms
        return channel.send(identifier, message)

    def close(self) -> None:
        self.email.close()
        self.sms.close()


def render_otp_message(code: str, expiry_minutes: int, name: Optional[str] = None) -> RenderedMessage:
    greeting = f"Hi {name}," if name else "Hi,"
    text = (
        f"{greeting}\n\n"
        f"Your verification code is {code}.\n"
        f"This code expires in {expiry_minutes} minutes. Do not share it with anyone."
    )
    html = (
        f"<p>{greeting}</p>"
        f"<p>Use the following code to verify your account:</p>"
        f"<p style=\"font-size: 32px; font-weight: bold; letter-spacing: 8px;\">{code}</p>"
        f"<p>This code expires in {expiry_minutes} minutes. Do not share it with anyone.</p>"
    )
    return RenderedMessage(subject=f"Your verification code: {code}", text=text, html=html)


PAYMENT_NOTICES = {
    "paid": ("Payment received for order #{order_id}",
             "We received your payment of {amount}. It is held securely until you confirm delivery."),
    "payment_failed": ("Payment failed for order #{order_id}",
                       "Your payment of {amount} did not go through. You can try again from your order page."),
    "refunded": ("Refund processed for order #{order_id}",
                 "Your payment of {amount} has been refunded."),
    "disputed": ("Order #{order_id} is under dispute",
                 "A dispute was opened on your payment of {amount}. Funds are on hold until it is resolved."),
}


def format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    if amount is None or not currency:
        return "your order"
    major: Decimal = from_minor_units(amount, currency)
    return f"{major} {currency.upper()}"


def render_payment_notice(
    order_id: str,
    status: str,
    amount: Optional[int],
    currency: Optional[str],
) -> Optional[RenderedMessage]:
    template = PAYMENT_NOTICES.get(status)
    if template is None:
        return None
    subject, body = template
    return RenderedMessage(
        subject=subject.format(order_id=order_id),
        text=body.format(amount=format_amount(amount, currency)),
    )


class PaymentNotifier:
    """Tells the buyer about payment status changes."""

    def __init__(self, dispatcher: MessageDispatcher):
        self.dispatcher = dispatcher

    def notify(
        self,
        order_id: str,
        status: str,
        email: Optional[str],
        amount: Optional[int],
        currency: Optional[str],
    ) -> bool:
        if not email:
            logger.debug("Order %s has no contact email; skipping %s notice", order_id, status)
            return False

        message = render_payment_notice(order_id, status, amount, currency)
        if message is None:
            return False

        sent = self.dispatcher.send(email, message)
        if not sent:
            logger.error("Failed to send %s notice for order %s", status, order_id)
        return sent
