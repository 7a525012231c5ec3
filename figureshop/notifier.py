"""
Fulfillment notifier.

Emails a paid order's details and artifact files to the operator. Sending is
best effort: failures are reported to the caller and never retried here.
"""
import logging
import mimetypes
import smtplib
from email.message import EmailMessage
from typing import Protocol

from .artifacts import ArtifactStore
from .config import Settings
from .errors import FigureShopError
from .models import Order, OrderStatus

logger = logging.getLogger(__name__)


class MailTransport(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class SmtpTransport:
    """Sends messages through the configured SMTP server."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def send(self, message: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=settings.smtp_timeout) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.email_username:
                smtp.login(settings.email_username, settings.email_password)
            smtp.send_message(message)


def build_order_notes(order: Order) -> str:
    """Plain-text body for the operator email."""
    notes = []
    notes.append(f"Order {order.id}")
    notes.append(f"Customer Email: {order.customer_email or 'not provided'}")
    notes.append(f"Order Date: {order.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if order.paid_at:
        notes.append(f"Paid At: {order.paid_at.strftime('%Y-%m-%d %H:%M:%S')}")
    notes.append("")

    notes.append("SHIPPING ADDRESS:")
    if order.customer_address:
        for line in order.customer_address.lines():
            notes.append(f"  {line}")
    else:
        notes.append("  not provided")
    notes.append("")

    notes.append(f"ARTIFACTS ({len(order.artifacts)}):")
    for ref in order.artifacts:
        notes.append(f"  - {ref}")

    return "\n".join(notes)


class FulfillmentNotifier:
    """Delivers paid orders to the operator's mailbox."""

    def __init__(self, settings: Settings, artifacts: ArtifactStore, transport: MailTransport):
        self.settings = settings
        self.artifacts = artifacts
        self.transport = transport

    def build_message(self, order: Order) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"New action figure order {order.id}"
        message["From"] = self.settings.sender_address
        message["To"] = self.settings.operator_email
        if order.customer_email:
            message["Reply-To"] = order.customer_email
        message.set_content(build_order_notes(order))

        for ref in order.artifacts:
            data = self.artifacts.read(ref)
            mime_type, _ = mimetypes.guess_type(ref)
            maintype, subtype = (mime_type or "application/octet-stream").split("/", 1)
            message.add_attachment(data, maintype=maintype, subtype=subtype, filename=ref)

        return message

    def send_order(self, order: Order) -> bool:
        """
        Send the order to the operator.

        Returns:
            True if the message was handed to the transport, False otherwise
        """
        if order.status != OrderStatus.PAID:
            logger.error("Refusing to notify for order %s in state %s", order.id, order.status.value)
            return False

        try:
            message = self.build_message(order)
            self.transport.send(message)
        except (FigureShopError, smtplib.SMTPException, OSError, ValueError) as e:
            logger.error("Failed to send order %s to %s: %s", order.id, self.settings.operator_email, e)
            return False

        logger.info("Sent order %s to %s", order.id, self.settings.operator_email)
        return True
