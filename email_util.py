import html
import logging
import re
from typing import List, Optional

import requests

from models import Order
from settings import Settings

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TIMEOUT_SECONDS = 10

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailError(Exception):
    pass


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip()
    return email if EMAIL_RE.match(email) else None


def format_clp(amount: float) -> str:
    # es-CL groups thousands with dots
    return "$" + f"{round(amount):,}".replace(",", ".")


def order_recipients(order: Order, settings: Settings) -> List[str]:
    recipients = []
    for email in (settings.orders_notify_email, order.customerEmail):
        normalized = normalize_email(email)
        if normalized is None:
            if email:
                logger.warning("Skipping unusable recipient %r for order %s", email, order.id)
            continue
        if normalized not in recipients:
            recipients.append(normalized)
    return recipients


def render_order_confirmation(order: Order) -> str:
    items = "".join(
        f"<li>{html.escape(i.name or i.productId)} - Cantidad: {i.quantity} - Precio: {format_clp(i.unitPrice)}</li>"
        for i in order.items
    )
    return (
        "<h2>Nueva Orden Confirmada</h2>"
        f"<p><strong>ID de Orden:</strong> {html.escape(order.id)}</p>"
        f"<p><strong>Cliente:</strong> {html.escape(order.customerName or 'No proporcionado')}</p>"
        f"<p><strong>Email:</strong> {html.escape(order.customerEmail or 'No proporcionado')}</p>"
        f"<p><strong>Total:</strong> {format_clp(order.computed_total)}</p>"
        f"<p><strong>Método de Pago:</strong> {html.escape(order.paymentMethod or 'mercadopago')}</p>"
        f"<h3>Productos:</h3><ul>{items}</ul>"
    )


class Mailer:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def send_order_confirmation(self, order: Order) -> str:
        """Send the "new order" notification; returns the provider message id."""
        if not self.settings.resend_api_key:
            raise EmailError("RESEND_API_KEY is not configured")

        recipients = order_recipients(order, self.settings)
        if not recipients:
            raise EmailError(f"no recipients for order {order.id}")

        payload = {
            "from": self.settings.email_from,
            "to": recipients,
            "subject": f"Nueva Orden #{order.id}",
            "html": render_order_confirmation(order),
        }
        try:
            response = self.session.post(
                RESEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                timeout=TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise EmailError(f"email for order {order.id} failed: {e}") from e

        message_id = data.get("id", "") if isinstance(data, dict) else ""
        logger.info("Order confirmation for %s sent to %s (%s)", order.id, recipients, message_id)
        return message_id
