import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cache import RateLimiter, TTLCache
from discounts import list_active_coupons, quote_cart, validate_coupon
from email_util import Mailer
from firebase_util import FirestoreCouponStore, FirestoreOrderStore, init_firebase
from mercadopago_util import MercadoPagoClient, PaymentGatewayError, build_preference
from models import (
    CartQuote, CartQuoteRequest, Coupon, CouponCreate, CouponResponse,
    CouponValidateRequest, DiscountValidation, PreferenceRequest,
    PreferenceResponse, WebhookNotification,
)
from settings import Settings, get_settings
from webhook import WebhookProcessor, verify_signature

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("checkout")

app = FastAPI(title="Importadora F&D Checkout API", version="1.0.0")

# 🔐 Allow storefront CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.coupon_limiter = RateLimiter(
    limit=settings.coupon_rate_limit,
    window=settings.coupon_rate_window,
    cache=TTLCache(ttl=settings.coupon_rate_window, max_entries=10_000),
)


# Dependencies

def get_now() -> datetime:
    return datetime.now(timezone.utc)


def get_coupon_store(settings: Settings = Depends(get_settings)):
    return FirestoreCouponStore(lambda: init_firebase(settings))


def get_gateway(settings: Settings = Depends(get_settings)):
    return MercadoPagoClient(settings.mercadopago_access_token)


def get_webhook_processor(settings: Settings = Depends(get_settings)) -> Callable[[], WebhookProcessor]:
    # Built lazily so a Firebase outage cannot turn into a non-200 reply
    def build() -> WebhookProcessor:
        return WebhookProcessor(
            gateway=MercadoPagoClient(settings.mercadopago_access_token),
            orders=FirestoreOrderStore(init_firebase(settings)),
            mailer=Mailer(settings),
        )
    return build


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.coupon_limiter


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def limit_coupon_attempts(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)):
    ip = client_ip(request)
    allowed, _ = limiter.hit(ip)
    if not allowed:
        logger.warning("Coupon rate limit exceeded for %s", ip)
        raise HTTPException(
            status_code=429,
            detail="Demasiadas peticiones. Por favor intenta más tarde.",
            headers={"Retry-After": str(limiter.retry_after(ip))},
        )


# 🔐 Admin API key check
def check_admin(
    api_key: str = Header(..., alias="x-api-key"),
    settings: Settings = Depends(get_settings),
):
    if not settings.admin_api_key or api_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


# 🎯 1. VALIDATE COUPON
@app.post("/api/coupons/validate", response_model=DiscountValidation,
          dependencies=[Depends(limit_coupon_attempts)])
def validate_coupon_route(body: CouponValidateRequest, store=Depends(get_coupon_store), now=Depends(get_now)):
    return validate_coupon(body.code, now, store)


# 🎯 2. QUOTE CART WITH COUPON
@app.post("/api/coupons/quote", response_model=CartQuote,
          dependencies=[Depends(limit_coupon_attempts)])
def quote_cart_route(body: CartQuoteRequest, store=Depends(get_coupon_store), now=Depends(get_now)):
    return quote_cart(body.code, body.cart, now, store)


# 🎯 3. ADMIN: COUPON MANAGEMENT
@app.get("/api/coupons/active", response_model=List[Coupon], dependencies=[Depends(check_admin)])
def active_coupons_route(store=Depends(get_coupon_store), now=Depends(get_now)):
    return list_active_coupons(now, store)


@app.post("/api/coupons", response_model=CouponResponse, status_code=201, dependencies=[Depends(check_admin)])
def create_coupon(coupon: CouponCreate, store=Depends(get_coupon_store)):
    if store.find_by_code(coupon.code) is not None:
        raise HTTPException(status_code=409, detail="Coupon code already exists")

    coupon_id = store.create(coupon)
    logger.info("Coupon %s created (%s)", coupon.code, coupon_id)
    return {"message": f"Coupon {coupon.code} created successfully", "id": coupon_id}


@app.put("/api/coupons/{coupon_id}", response_model=CouponResponse, dependencies=[Depends(check_admin)])
def update_coupon(coupon_id: str, coupon: CouponCreate, store=Depends(get_coupon_store)):
    existing = store.find_by_code(coupon.code)
    if existing is not None and existing.id != coupon_id:
        raise HTTPException(status_code=409, detail="Coupon code already exists")

    if not store.update(coupon_id, coupon):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"message": f"Coupon {coupon.code} updated", "id": coupon_id}


@app.delete("/api/coupons/{coupon_id}", response_model=CouponResponse, dependencies=[Depends(check_admin)])
def delete_coupon(coupon_id: str, store=Depends(get_coupon_store)):
    if not store.delete(coupon_id):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"message": "Coupon deleted", "id": coupon_id}


# 🎯 4. MERCADOPAGO CHECKOUT PREFERENCE
@app.post("/api/mercadopago/create-preference", response_model=PreferenceResponse)
def create_preference(
    body: PreferenceRequest,
    gateway=Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    if not body.items:
        return JSONResponse(status_code=400, content={"error": "Items son requeridos"})

    stamp = int(time.time() * 1000)
    if body.orderId:
        idempotency_key = f"order_{body.orderId}"
    else:
        idempotency_key = f"temp_{stamp}_{uuid.uuid4().hex[:10]}"

    preference = build_preference(body, settings.base_url, fallback_reference=f"order_{stamp}")
    logger.info("Creating preference for order %s (%d items)", body.orderId or "-", len(body.items))
    try:
        return gateway.create_preference(preference, idempotency_key)
    except PaymentGatewayError as e:
        logger.exception("Error creating MercadoPago preference")
        return JSONResponse(status_code=500, content={"error": "Error interno del servidor", "message": str(e)})


@app.get("/api/mercadopago/test-credentials")
def test_credentials(settings: Settings = Depends(get_settings)):
    if settings.is_production:
        return JSONResponse(
            status_code=403,
            content={"error": "Endpoint no disponible en producción por seguridad."},
        )

    token = settings.mercadopago_access_token
    status = {
        "hasAccessToken": bool(token),
        "hasPublicKey": bool(settings.mercadopago_public_key),
        "hasWebhookSecret": bool(settings.mercadopago_webhook_secret),
    }
    if not token or not settings.mercadopago_public_key:
        return JSONResponse(status_code=400, content={"error": "Credenciales no configuradas", **status})
    return {**status, "isTestMode": token.startswith("TEST-")}


# 🎯 5. MERCADOPAGO WEBHOOK
@app.post("/api/mercadopago/webhook")
async def mercadopago_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    build_processor=Depends(get_webhook_processor),
):
    try:
        raw = await request.body()
        notification = WebhookNotification.model_validate(json.loads(raw))
    except ValueError:
        logger.exception("Unreadable MercadoPago webhook body")
        return {"error": "Internal error"}

    if not verify_signature(
        request.headers.get("x-signature"),
        request.headers.get("x-request-id"),
        notification.data.id,
        settings.mercadopago_webhook_secret,
    ):
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        processor = build_processor()
        await run_in_threadpool(processor.process, notification)
    except Exception:
        logger.exception("Error processing MercadoPago webhook")
        # Acknowledge anyway so the gateway does not retry
        return {"error": "Internal error"}
    return {"received": True}


@app.get("/api/mercadopago/webhook")
def mercadopago_webhook_probe():
    return {
        "message": "Webhook MercadoPago funcionando",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
