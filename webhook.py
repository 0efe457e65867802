"""
MercadoPago payment notifications.

The gateway delivers notifications at least once. Signature checks run
before anything else; after that every outcome is acknowledged so the
gateway does not keep retrying deliveries that can never succeed.
"""
import hashlib
import hmac
import logging
from typing import Dict, Optional

from mercadopago_util import PaymentGatewayError
from models import WebhookNotification
from payments import PaymentTransition

logger = logging.getLogger(__name__)


def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    parts = {}
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_template(data_id, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def sign(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_signature(signature: Optional[str], request_id: Optional[str], data_id,
                     secret: Optional[str]) -> bool:
    if not signature or not request_id:
        logger.warning("Webhook without x-signature or x-request-id")
        return False

    parts = parse_signature_header(signature)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        logger.warning("Incomplete webhook signature header")
        return False

    if not secret:
        logger.error("MERCADOPAGO_WEBHOOK_SECRET is not configured")
        return False

    expected = sign(secret, signature_template(data_id, request_id, ts))
    if not hmac.compare_digest(expected.encode(), v1.lower().encode()):
        logger.warning("Invalid webhook signature (request %s, data %s)", request_id, data_id)
        return False
    return True


class WebhookProcessor:
    def __init__(self, gateway, orders, mailer):
        self.gateway = gateway
        self.orders = orders
        self.mailer = mailer

    def process(self, notification: WebhookNotification) -> Optional[PaymentTransition]:
        """Apply a verified notification; returns the transition written, if any."""
        if notification.type != "payment":
            logger.info("Ignoring notification type=%s action=%s", notification.type, notification.action)
            return None

        payment_id = notification.data.id
        if not payment_id:
            logger.warning("Payment notification without data.id")
            return None

        try:
            payment = self.gateway.get_payment(payment_id)
        except PaymentGatewayError:
            logger.exception("Could not fetch payment %s", payment_id)
            return None

        order_id = payment.external_reference
        if not order_id or order_id == "undefined":
            logger.warning("Payment %s has no external_reference", payment_id)
            return None

        result = self.orders.commit_payment(order_id, payment)
        if result is None:
            logger.warning("Order %s not found for payment %s", order_id, payment_id)
            return None

        order, transition = result
        logger.info(
            "Order %s: %s -> %s (payment %s %s)",
            order_id, transition.previousStatus.value, transition.newStatus.value, payment_id, payment.status,
        )
        if not transition.applySideEffects:
            return transition

        for change in transition.stockChanges:
            logger.info("Stock decremented: %s %s -> %s", change.name or change.productId, change.before, change.after)
        for product_id in transition.missingProducts:
            logger.warning("Product %s in order %s no longer exists; stock not updated", product_id, order_id)

        try:
            self.mailer.send_order_confirmation(order)
        except Exception:
            logger.exception("Confirmation email for order %s failed", order_id)
        return transition
