"""Email sending via Resend API.

Plain-text payment link and receipt e-mails, and the optional invoice snippet that points
a third party at the guest payment link.
"""

import logging
from datetime import datetime
from decimal import Decimal
from html import escape

import httpx

from guest_checkout.models.order import Order

logger = logging.getLogger(__name__)

_RESEND_API_URL = "https://api.resend.com/emails"
_RESEND_TIMEOUT = 10.0


def format_amount(amount: Decimal, currency: str) -> str:
    """Render a money amount as ``"123.45 USD"``."""
    return f"{Decimal(amount):.2f} {currency}"


def build_payment_link_email(
    *,
    site_name: str,
    order: Order,
    link: str,
    expires_at: datetime,
) -> tuple[str, str]:
    """Compose subject and body for a payment link e-mail.

    Args:
        site_name: Shop name used in the subject.
        order: Order being paid.
        link: Guest payment link.
        expires_at: Link expiry.

    Returns:
        (subject, text body) tuple.
    """
    subject = f"Payment Request for {site_name} Subscription"
    body = (
        "Hello,\n\n"
        f"You have been asked to complete payment for order #{order.id}.\n\n"
        f"Order total: {format_amount(order.total, order.currency)}\n\n"
        f"Pay securely here:\n{link}\n\n"
        f"This link is valid until {expires_at:%B %d, %Y %H:%M} UTC "
        "and can only be used once.\n\n"
        "If you were not expecting this request, you can ignore this email."
    )
    return subject, body


def build_receipt_email(
    *, order: Order, link: str, expires_at: datetime
) -> tuple[str, str]:
    """Compose subject and body for a receipt e-mail.

    Returns:
        (subject, text body) tuple.
    """
    subject = f"Receipt for Order #{order.id}"
    body = (
        "Hello,\n\n"
        "Thank you for your payment. Here is your receipt confirmation.\n\n"
        f"Order number: #{order.id}\n"
        f"Total paid: {format_amount(order.total, order.currency)}\n\n"
        f"View your receipt online:\n{link}\n\n"
        f"This receipt link remains accessible until {expires_at:%B %d, %Y} UTC."
    )
    return subject, body


def build_invoice_payment_message(link: str, *, plain_text: bool) -> str:
    """Snippet appended to invoices for orders someone else may pay.

    Args:
        link: Guest payment link.
        plain_text: Render for a plain-text e-mail instead of HTML.

    Returns:
        Message text or HTML paragraph.
    """
    lead = "Will someone else be paying this invoice?"
    if plain_text:
        return f"{lead} Use our guest payment link to complete this transaction: {link}"
    return (
        f'<p>{lead} Use our <a href="{escape(link, quote=True)}">guest payment link</a> '
        "to complete this transaction.</p>"
    )


class ResendMailer:
    """Mailer that delivers payment links and receipts through Resend.

    Attributes:
        api_key: Resend API key.
        sender: From address.
        site_name: Shop name for the subject line.
    """

    def __init__(self, *, api_key: str, sender: str, site_name: str) -> None:
        self.api_key = api_key
        self.sender = sender
        self.site_name = site_name

    async def send_payment_link(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        """Send the payment link to a guest.

        Args:
            order: Order being paid.
            to_email: Guest address.
            link: Guest payment link.
            expires_at: Link expiry.

        Returns:
            True if Resend accepted the message, False on any failure.
        """
        subject, body = build_payment_link_email(
            site_name=self.site_name, order=order, link=link, expires_at=expires_at
        )
        return await self._deliver(to_email, subject, body, order_id=order.id)

    async def send_receipt(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        """Send the receipt link to a guest payer.

        Returns:
            True if Resend accepted the message, False on any failure.
        """
        subject, body = build_receipt_email(order=order, link=link, expires_at=expires_at)
        return await self._deliver(to_email, subject, body, order_id=order.id)

    async def _deliver(
        self, to_email: str, subject: str, body: str, *, order_id: int
    ) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    _RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from": self.sender,
                        "to": to_email,
                        "subject": subject,
                        "text": body,
                    },
                    timeout=_RESEND_TIMEOUT,
                )
                resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning(
                "Failed to send guest payment email for order %s",
                order_id,
                exc_info=True,
            )
            return False
        return True
