import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import ValidationError

from models import Coupon, CouponCreate, Order, PaymentInfo, Product
from payments import PaymentTransition, plan_transition
from settings import Settings

logger = logging.getLogger(__name__)

COUPONS = "discounts"
ORDERS = "orders"
PRODUCTS = "products"


def init_firebase(settings: Settings):
    """Initialize the Firebase app once and return a Firestore client."""
    if not firebase_admin._apps:
        try:
            if settings.firebase_cred_json:
                cred = credentials.Certificate(settings.firebase_cred_json)
            else:
                cred = credentials.ApplicationDefault()
            options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None
            firebase_admin.initialize_app(cred, options)
        except Exception as e:
            raise RuntimeError(f"Firebase initialization failed: {e}") from e
    return firestore.client()


# Records read from Firestore are validated here; anything malformed is
# logged and treated as absent.

def parse_coupon(doc_id: str, data: Optional[Dict[str, Any]]) -> Optional[Coupon]:
    if not data:
        return None
    try:
        return Coupon.model_validate({**data, "id": doc_id})
    except ValidationError as e:
        logger.warning("Ignoring malformed coupon %s: %s", doc_id, e.errors())
        return None


def parse_order(doc_id: str, data: Optional[Dict[str, Any]]) -> Optional[Order]:
    if not data:
        return None
    try:
        return Order.model_validate({**data, "id": doc_id})
    except ValidationError as e:
        logger.error("Ignoring malformed order %s: %s", doc_id, e.errors())
        return None


def parse_product(doc_id: str, data: Optional[Dict[str, Any]]) -> Optional[Product]:
    if data is None:
        return None
    try:
        return Product.model_validate({**data, "id": doc_id})
    except ValidationError as e:
        logger.warning("Ignoring malformed product %s: %s", doc_id, e.errors())
        return None


def coupon_document(coupon: CouponCreate) -> Dict[str, Any]:
    data = coupon.model_dump()
    data["discountType"] = coupon.discountType.value
    data["updatedAt"] = firestore.SERVER_TIMESTAMP
    return data


class FirestoreCouponStore:
    # Resolved per call so connection failures raise inside the callers' error handling
    def __init__(self, connect: Callable[[], Any]):
        self.connect = connect

    def _collection(self):
        return self.connect().collection(COUPONS)

    def find_by_code(self, code: str) -> Optional[Coupon]:
        query = self._collection().where(filter=FieldFilter("code", "==", code)).limit(1)
        for doc in query.stream():
            return parse_coupon(doc.id, doc.to_dict())
        return None

    def list_active(self) -> List[Coupon]:
        query = self._collection().where(filter=FieldFilter("active", "==", True))
        coupons = (parse_coupon(doc.id, doc.to_dict()) for doc in query.stream())
        return [c for c in coupons if c is not None]

    def create(self, coupon: CouponCreate) -> str:
        data = coupon_document(coupon)
        data["createdAt"] = firestore.SERVER_TIMESTAMP
        _, ref = self._collection().add(data)
        return ref.id

    def update(self, coupon_id: str, coupon: CouponCreate) -> bool:
        ref = self._collection().document(coupon_id)
        if not ref.get().exists:
            return False
        ref.update(coupon_document(coupon))
        return True

    def delete(self, coupon_id: str) -> bool:
        ref = self._collection().document(coupon_id)
        if not ref.get().exists:
            return False
        ref.delete()
        return True


class FirestoreOrderStore:
    def __init__(self, db):
        self.db = db

    def commit_payment(self, order_id: str, payment: PaymentInfo) -> Optional[Tuple[Order, PaymentTransition]]:
        """Apply ``payment`` to the order and its stock in one transaction.

        Returns None when the order does not exist or cannot be parsed.
        """
        order_ref = self.db.collection(ORDERS).document(order_id)
        products = self.db.collection(PRODUCTS)

        @firestore.transactional
        def apply(transaction):
            snapshot = order_ref.get(transaction=transaction)
            if not snapshot.exists:
                return None
            order = parse_order(snapshot.id, snapshot.to_dict())
            if order is None:
                return None

            def read_stock(product_id: str) -> Optional[int]:
                product_snapshot = products.document(product_id).get(transaction=transaction)
                if not product_snapshot.exists:
                    return None
                product = parse_product(product_id, product_snapshot.to_dict())
                return product.stock if product else None

            transition = plan_transition(order, payment, read_stock)
            transaction.update(order_ref, transition.orderFields)
            for change in transition.stockChanges:
                transaction.update(products.document(change.productId), {"stock": change.after})
            return order, transition

        return apply(self.db.transaction())
