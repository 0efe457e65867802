"""
Coupon validation and line-item pricing.

Failures are returned as ``DiscountValidation`` results instead of raised so
the checkout can render the message inline.
"""
import logging
from datetime import datetime
from typing import List

from models import (
    CartItem, CartQuote, Coupon, DiscountType, DiscountValidation,
    LineDiscount, QuotedLine, as_utc,
)

logger = logging.getLogger(__name__)

MSG_EMPTY = "Por favor ingresa un código de descuento"
MSG_INVALID = "Código inválido"
MSG_EXPIRED = "Código expirado"
MSG_VALID = "Código válido"
MSG_ERROR = "Error al validar código"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def validate_coupon(code: str, now: datetime, store) -> DiscountValidation:
    normalized = normalize_code(code)
    if not normalized:
        return DiscountValidation(valido=False, mensaje=MSG_EMPTY)

    try:
        coupon = store.find_by_code(normalized)
    except Exception:
        logger.exception("Error looking up coupon %s", normalized)
        return DiscountValidation(valido=False, mensaje=MSG_ERROR)

    # Unknown and inactive codes share a message so existing codes are not revealed
    if coupon is None or not coupon.active:
        return DiscountValidation(valido=False, mensaje=MSG_INVALID)

    if not coupon.is_within_window(now):
        return DiscountValidation(valido=False, mensaje=MSG_EXPIRED)

    return DiscountValidation(valido=True, mensaje=MSG_VALID, descuento=coupon)


def compute_line_discount(product_id: str, original_price: float, coupon: Coupon) -> LineDiscount:
    if product_id not in coupon.applicableProductIds:
        return LineDiscount(discountAmount=0, finalPrice=original_price)

    if coupon.discountType == DiscountType.PERCENTAGE:
        amount = original_price * coupon.discountValue / 100
    else:
        amount = coupon.discountValue

    amount = min(amount, original_price)
    return LineDiscount(discountAmount=amount, finalPrice=original_price - amount)


def list_active_coupons(now: datetime, store) -> List[Coupon]:
    """Active coupons that have not ended yet.

    The start date is not checked so admins can preview upcoming coupons.
    """
    now = as_utc(now)
    try:
        coupons = store.list_active()
    except Exception:
        logger.exception("Error listing active coupons")
        return []
    return [c for c in coupons if c.active and now <= c.validUntil]


def quote_cart(code: str, items: List[CartItem], now: datetime, store) -> CartQuote:
    subtotal = sum(i.price * i.quantity for i in items)
    result = validate_coupon(code, now, store)
    if not result.valido:
        return CartQuote(valido=False, mensaje=result.mensaje, subtotal=subtotal, newTotal=subtotal)

    coupon = result.descuento
    lines = []
    for item in items:
        line = compute_line_discount(item.productId, item.price * item.quantity, coupon)
        lines.append(QuotedLine(**item.model_dump(), **line.model_dump()))

    discount = sum(line.discountAmount for line in lines)
    return CartQuote(
        valido=True,
        mensaje=result.mensaje,
        subtotal=subtotal,
        discount=discount,
        newTotal=subtotal - discount,
        lines=lines,
    )
