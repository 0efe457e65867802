from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Coupons

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponBase(BaseModel):
    code: str
    description: Optional[str] = None
    discountValue: float
    discountType: DiscountType
    applicableProductIds: List[str] = Field(default_factory=list)
    validFrom: datetime
    validUntil: datetime
    active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("code is required")
        return v

    @field_validator("validFrom", "validUntil")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_discount_value(self):
        if self.discountValue <= 0:
            raise ValueError("discountValue must be greater than 0")
        if self.discountType == DiscountType.PERCENTAGE and self.discountValue > 100:
            raise ValueError("percentage discountValue must be at most 100")
        return self


class CouponCreate(CouponBase):
    @model_validator(mode="after")
    def check_window(self):
        if self.validUntil <= self.validFrom:
            raise ValueError("validUntil must be after validFrom")
        return self


class Coupon(CouponBase):
    id: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    def is_within_window(self, now: datetime) -> bool:
        return self.validFrom <= as_utc(now) <= self.validUntil


class CouponResponse(BaseModel):
    message: str
    id: Optional[str] = None


class CouponValidateRequest(BaseModel):
    code: str


class DiscountValidation(BaseModel):
    valido: bool
    mensaje: str
    descuento: Optional[Coupon] = None


class LineDiscount(BaseModel):
    discountAmount: float
    finalPrice: float


class CartItem(BaseModel):
    productId: str
    name: Optional[str] = None
    price: float = Field(ge=0)
    quantity: int = Field(1, ge=1)


class CartQuoteRequest(BaseModel):
    code: str
    cart: List[CartItem]


class QuotedLine(CartItem):
    discountAmount: float
    finalPrice: float


class CartQuote(BaseModel):
    valido: bool
    mensaje: str
    subtotal: float = 0
    discount: float = 0
    newTotal: float = 0
    lines: List[QuotedLine] = Field(default_factory=list)


# Orders and products

class OrderStatus(str, Enum):
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PENDING_VERIFICATION = "pending_verification"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class OrderItem(BaseModel):
    productId: str
    quantity: int = Field(ge=0)
    unitPrice: float = 0
    name: str = ""


class Order(BaseModel):
    id: str
    status: OrderStatus
    items: List[OrderItem] = Field(default_factory=list)
    customerName: Optional[str] = None
    customerEmail: Optional[str] = None
    total: Optional[float] = None
    paymentMethod: Optional[str] = None
    paymentStatus: Optional[str] = None
    paymentId: Optional[str] = None
    paymentDetails: Optional[Dict[str, Any]] = None

    @property
    def computed_total(self) -> float:
        if self.total is not None:
            return self.total
        return sum(i.unitPrice * i.quantity for i in self.items)


class Product(BaseModel):
    id: str
    name: Optional[str] = None
    stock: int = 0

    @field_validator("stock", mode="before")
    @classmethod
    def default_stock(cls, v):
        return 0 if v is None else v


# MercadoPago

class WebhookData(BaseModel):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)


class WebhookNotification(BaseModel):
    type: Optional[str] = None
    action: Optional[str] = None
    data: WebhookData = Field(default_factory=WebhookData)


class PaymentInfo(BaseModel):
    """Subset of a MercadoPago payment resource."""
    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    transaction_amount: Optional[float] = None
    payment_method_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    date_approved: Optional[str] = None
    date_created: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)


class PreferenceItem(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    image: Optional[str] = None


class UserAddress(BaseModel):
    street: Optional[str] = None
    postalCode: Optional[str] = None


class UserInfo(BaseModel):
    firstName: str = ""
    lastName: str = ""
    email: str = ""
    phone: Optional[str] = None
    rut: Optional[str] = None
    address: Optional[UserAddress] = None


class PreferenceRequest(BaseModel):
    items: List[PreferenceItem] = Field(default_factory=list)
    userInfo: Optional[UserInfo] = None
    orderId: Optional[str] = None


class PreferenceResponse(BaseModel):
    preferenceId: str
    initPoint: Optional[str] = None
    sandboxInitPoint: Optional[str] = None
