import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables
load_dotenv()


class Settings(BaseModel):
    app_env: str = "development"
    admin_api_key: Optional[str] = None

    firebase_cred_json: Optional[str] = None
    firebase_project_id: Optional[str] = None

    mercadopago_access_token: Optional[str] = None
    mercadopago_public_key: Optional[str] = None
    mercadopago_webhook_secret: Optional[str] = None
    base_url: str = "http://localhost:3000"

    resend_api_key: Optional[str] = None
    email_from: str = "Importadora F&D <pedidos@importadorafyd.cl>"
    orders_notify_email: str = "ventas.fyd2025@gmail.com"

    coupon_rate_limit: int = 10
    coupon_rate_window: int = 60
    cors_origins: List[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
            firebase_cred_json=os.getenv("FIREBASE_CRED_JSON"),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
            mercadopago_access_token=(os.getenv("MERCADOPAGO_ACCESS_TOKEN") or "").strip() or None,
            mercadopago_public_key=os.getenv("MERCADOPAGO_PUBLIC_KEY"),
            mercadopago_webhook_secret=os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or None,
            base_url=os.getenv("BASE_URL", "http://localhost:3000").strip().rstrip("/"),
            resend_api_key=os.getenv("RESEND_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", cls.model_fields["email_from"].default),
            orders_notify_email=os.getenv("ORDERS_NOTIFY_EMAIL", cls.model_fields["orders_notify_email"].default),
            coupon_rate_limit=int(os.getenv("COUPON_RATE_LIMIT", "10")),
            coupon_rate_window=int(os.getenv("COUPON_RATE_WINDOW", "60")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8000")),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
