"""
Notification Dispatcher
=======================
Sends the customer's order confirmation email with the fulfilment documents
attached.

Features:
- IEmailClient seam: Resend over httpx in production, no-op when unconfigured
- LMN PDF attached; invoice PDF when the order has no LMN
- Customer-supplied text is HTML-escaped before it reaches the template
- Single attempt: failures propagate to the caller's fault boundary

pip install httpx structlog
"""

import base64
import html
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from config import Settings
from pipeline.providers import ProviderHTTPClient
from pipeline.rendering import BRAND_NAME, format_money
from schemas.documents import DocumentBundle
from schemas.payments import Order


# =============================================================================
# MODELS
# =============================================================================

class EmailAttachment(BaseModel):
    filename: str
    content: bytes = Field(repr=False)

    def to_payload(self) -> dict:
        return {
            "filename": self.filename,
            "content": base64.b64encode(self.content).decode("ascii"),
        }


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    attachments: list[EmailAttachment] = Field(default_factory=list)


# =============================================================================
# EMAIL CLIENTS
# =============================================================================

class IEmailClient(ABC):
    """Email transport interface"""

    @abstractmethod
    async def send(self, message: EmailMessage) -> Optional[str]:
        """Send one message; returns the transport's message id when it has one."""
        pass

    async def close(self):
        pass


class ResendEmailClient(ProviderHTTPClient, IEmailClient):
    provider_name = "resend"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            settings.resend_api_url,
            settings.provider_timeout_seconds,
            client=client,
        )
        self._api_key = settings.resend_api_key
        self._from_email = settings.from_email

    async def send(self, message: EmailMessage) -> Optional[str]:
        body = {
            "from": self._from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.attachments:
            body["attachments"] = [a.to_payload() for a in message.attachments]

        data = await self._json(
            "POST",
            "/emails",
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        return data.get("id")


class NullEmailClient(IEmailClient):
    """Used when no email provider is configured. Remembers what it was asked to send."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self._logger = structlog.get_logger().bind(component="null_email_client")

    async def send(self, message: EmailMessage) -> Optional[str]:
        self.sent.append(message)
        self._logger.info("email_not_configured_skipped", to=message.to, subject=message.subject)
        return None


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Example:
        dispatcher = NotificationDispatcher(ResendEmailClient(settings), settings.frontend_url)
        await dispatcher.notify(order, bundle)
    """

    def __init__(self, email_client: Optional[IEmailClient] = None, frontend_url: str = ""):
        self.email = email_client or NullEmailClient()
        self.frontend_url = frontend_url.rstrip("/")
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(component="notification_dispatcher", correlation_id=correlation_id)

    async def notify(
        self,
        order: Order,
        bundle: DocumentBundle,
        correlation_id: Optional[str] = None,
    ) -> Optional[str]:
        log = self._get_logger(correlation_id)

        if not order.customer_email:
            log.warning("notification_skipped_no_recipient", order_number=order.order_number)
            return None

        message = self.build_message(order, bundle)
        message_id = await self.email.send(message)

        log.info(
            "confirmation_email_sent",
            order_number=order.order_number,
            message_id=message_id,
            attachments=[a.filename for a in message.attachments],
        )
        return message_id

    def build_message(self, order: Order, bundle: DocumentBundle) -> EmailMessage:
        attachments = []
        if bundle.lmn is not None and bundle.lmn_pdf:
            attachments.append(EmailAttachment(filename=f"{bundle.lmn.lmn_number}.pdf", content=bundle.lmn_pdf))
        elif bundle.invoice is not None and bundle.invoice_pdf:
            attachments.append(
                EmailAttachment(filename=f"{bundle.invoice.invoice_number}.pdf", content=bundle.invoice_pdf)
            )

        return EmailMessage(
            to=order.customer_email,
            subject=f"Your {BRAND_NAME} order {order.order_number} is confirmed",
            html=self._render_html(order, bundle),
            attachments=attachments,
        )

    def _render_html(self, order: Order, bundle: DocumentBundle) -> str:
        e = html.escape
        greeting = f"Hi {e(order.customer_name)}," if order.customer_name else "Hi there,"

        rows = "".join(
            f"<tr><td>{e(item.name)}</td><td align=\"right\">{item.quantity}</td>"
            f"<td align=\"right\">{e(format_money(item.total_minor, order.currency))}</td></tr>"
            for item in order.items
        )

        documents = []
        if bundle.lmn_number:
            documents.append(
                f"<li>Letter of Medical Necessity <strong>{e(bundle.lmn_number)}</strong> "
                f"(attached, for HSA/FSA reimbursement)</li>"
            )
        if bundle.invoice_number:
            documents.append(f"<li>Invoice <strong>{e(bundle.invoice_number)}</strong></li>")
        documents_html = f"<p>Your documents:</p><ul>{''.join(documents)}</ul>" if documents else ""

        order_link = ""
        if self.frontend_url:
            url = f"{self.frontend_url}/success?order={order.order_number}"
            order_link = f"<p><a href=\"{e(url)}\">View your order</a></p>"

        return (
            "<html><body style=\"font-family: Helvetica, Arial, sans-serif; color: #1f2937;\">"
            f"<h2 style=\"color: #2A4542;\">{e(BRAND_NAME)}</h2>"
            f"<p>{greeting}</p>"
            f"<p>Thank you for your order. Payment for order <strong>{e(order.order_number)}</strong> "
            "has been received.</p>"
            "<table cellpadding=\"6\" style=\"border-collapse: collapse;\">"
            "<tr><th align=\"left\">Product</th><th align=\"right\">Qty</th><th align=\"right\">Total</th></tr>"
            f"{rows}"
            f"<tr><td colspan=\"2\"><strong>Total paid</strong></td>"
            f"<td align=\"right\"><strong>{e(format_money(order.total_amount_minor, order.currency))}</strong></td></tr>"
            "</table>"
            f"{documents_html}"
            f"{order_link}"
            "</body></html>"
        )
