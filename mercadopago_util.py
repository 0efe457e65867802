from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from models import PaymentInfo, PreferenceRequest, PreferenceResponse

API_URL = "https://api.mercadopago.com"
TIMEOUT_SECONDS = 5
STATEMENT_DESCRIPTOR = "IMPORTADORA F&D"
CURRENCY = "CLP"


class PaymentGatewayError(Exception):
    pass


class MercadoPagoClient:
    def __init__(self, access_token: Optional[str], session: Optional[requests.Session] = None):
        self.access_token = access_token
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        if not self.access_token:
            raise PaymentGatewayError("MERCADOPAGO_ACCESS_TOKEN is not configured")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def get_payment(self, payment_id: str) -> PaymentInfo:
        url = f"{API_URL}/v1/payments/{quote(str(payment_id), safe='')}"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=TIMEOUT_SECONDS)
            response.raise_for_status()
            return PaymentInfo.model_validate(response.json())
        except PaymentGatewayError:
            raise
        except Exception as e:
            raise PaymentGatewayError(f"could not fetch payment {payment_id}: {e}") from e

    def create_preference(self, body: Dict[str, Any], idempotency_key: str) -> PreferenceResponse:
        try:
            response = self.session.post(
                f"{API_URL}/checkout/preferences",
                json=body,
                headers=self._headers(idempotency_key),
                timeout=TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except PaymentGatewayError:
            raise
        except requests.HTTPError as e:
            detail = e.response.text if e.response is not None else ""
            raise PaymentGatewayError(f"preference rejected: {detail or e}") from e
        except Exception as e:
            raise PaymentGatewayError(f"could not create preference: {e}") from e

        return PreferenceResponse(
            preferenceId=data["id"],
            initPoint=data.get("init_point"),
            sandboxInitPoint=data.get("sandbox_init_point"),
        )


def build_preference(request: PreferenceRequest, base_url: str, fallback_reference: str) -> Dict[str, Any]:
    """Translate a checkout request into a MercadoPago preference body."""
    user = request.userInfo
    customer_name = f"{user.firstName} {user.lastName}".strip() if user else ""
    customer_email = user.email if user else ""
    order_id = request.orderId or ""

    items = [
        {
            "id": item.id,
            "title": item.title,
            "description": item.description or f"{item.title} - Producto",
            "quantity": item.quantity,
            "unit_price": float(item.price),
            "currency_id": CURRENCY,
            "picture_url": item.image,
        }
        for item in request.items
    ]
    total = sum(i["unit_price"] * i["quantity"] for i in items)
    total_str = str(int(total)) if float(total).is_integer() else str(total)

    success_url = (
        f"{base_url}/checkout/success?orderId={quote(order_id)}&paymentMethod=mercadopago"
        f"&customerName={quote(customer_name)}&customerEmail={quote(customer_email)}&total={total_str}"
    )
    return {
        "items": items,
        "payer": {"email": customer_email},
        "back_urls": {
            "success": success_url,
            "failure": f"{base_url}/checkout/failure?orderId={quote(order_id)}",
            "pending": f"{base_url}/checkout/pending?orderId={quote(order_id)}",
        },
        "external_reference": request.orderId or fallback_reference,
        "notification_url": f"{base_url}/api/mercadopago/webhook",
        "statement_descriptor": STATEMENT_DESCRIPTOR,
        "auto_return": "approved",
    }
