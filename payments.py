"""
Rules for applying a MercadoPago payment to a stored order.

``plan_transition`` decides what gets written; the order store runs it inside
a transaction and performs the writes it returns.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from models import TERMINAL_STATUSES, Order, OrderStatus, PaymentInfo

APPROVED = "approved"

STATUS_MAP = {
    "approved": OrderStatus.CONFIRMED,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
}


def map_payment_status(status: str) -> OrderStatus:
    return STATUS_MAP.get(status, OrderStatus.PENDING)


def payment_snapshot(payment: PaymentInfo, now: datetime) -> Dict[str, Any]:
    return {
        "transactionAmount": payment.transaction_amount,
        "paymentMethodId": payment.payment_method_id,
        "paymentTypeId": payment.payment_type_id,
        "statusDetail": payment.status_detail,
        "dateApproved": payment.date_approved,
        "dateCreated": payment.date_created,
        "lastUpdated": now.isoformat(),
    }


def decrement_stock(current: int, quantity: int) -> int:
    return max(0, current - quantity)


def should_apply_side_effects(gateway_status: str, previous_status: OrderStatus) -> bool:
    # Only the first approval moves an order out of pending_payment
    return gateway_status == APPROVED and previous_status == OrderStatus.PENDING_PAYMENT


class StockChange(BaseModel):
    productId: str
    name: str = ""
    before: int
    after: int


class PaymentTransition(BaseModel):
    orderId: str
    previousStatus: OrderStatus
    newStatus: OrderStatus
    orderFields: Dict[str, Any]
    applySideEffects: bool = False
    stockChanges: List[StockChange] = Field(default_factory=list)
    missingProducts: List[str] = Field(default_factory=list)


def plan_transition(
    order: Order,
    payment: PaymentInfo,
    read_stock: Callable[[str], Optional[int]],
    now: Optional[datetime] = None,
) -> PaymentTransition:
    """Work out the order update and stock decrements for ``payment``.

    ``read_stock`` returns the current stock of a product or None when the
    product does not exist. It is only called when side effects apply.
    """
    now = now or datetime.now(timezone.utc)
    previous = order.status
    new_status = map_payment_status(payment.status)
    if previous in TERMINAL_STATUSES:
        new_status = previous

    fields = {
        "status": new_status.value,
        "paymentStatus": payment.status,
        "paymentId": payment.id,
        "paymentDetails": payment_snapshot(payment, now),
        "updatedAt": now,
    }
    transition = PaymentTransition(
        orderId=order.id,
        previousStatus=previous,
        newStatus=new_status,
        orderFields=fields,
    )

    if not should_apply_side_effects(payment.status, previous):
        return transition

    transition.applySideEffects = True
    # Merge repeated lines so each product is written once
    quantities: Dict[str, int] = {}
    names: Dict[str, str] = {}
    for item in order.items:
        quantities[item.productId] = quantities.get(item.productId, 0) + item.quantity
        names.setdefault(item.productId, item.name)

    for product_id, quantity in quantities.items():
        current = read_stock(product_id)
        if current is None:
            transition.missingProducts.append(product_id)
            continue
        transition.stockChanges.append(StockChange(
            productId=product_id,
            name=names[product_id],
            before=current,
            after=decrement_stock(current, quantity),
        ))
    return transition
