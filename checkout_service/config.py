import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

SIGNATURE_SCHEMES = {"manifest", "body"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: Optional[str]
    mp_access_token: str
    mp_webhook_secret: str
    mp_api_base: str
    mp_use_sandbox: bool
    app_url: str
    currency: str
    reservation_ttl_minutes: int
    http_timeout_seconds: float
    http_max_retries: int
    signature_schemes: Tuple[str, ...]
    log_level: str

    @property
    def notification_url(self) -> str:
        return f"{self.app_url}/webhooks/mercadopago"

    def back_urls(self, order_id: str) -> dict:
        return {
            "success": f"{self.app_url}/checkout/success?order={order_id}",
            "failure": f"{self.app_url}/checkout/failure?order={order_id}",
            "pending": f"{self.app_url}/checkout/pending?order={order_id}",
        }


def validate_currency(value: Optional[str]) -> str:
    v = (value or "BRL").strip().upper()
    if len(v) != 3:
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def parse_schemes(value: Optional[str]) -> Tuple[str, ...]:
    schemes = tuple(s.strip().lower() for s in (value or "manifest,body").split(",") if s.strip())
    unknown = set(schemes) - SIGNATURE_SCHEMES
    if unknown or not schemes:
        raise ValueError(f"Invalid WEBHOOK_SIGNATURE_SCHEMES: {value!r}")
    return schemes


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    load_dotenv(dotenv_path=ENV_PATH)

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return Settings(
        database_url=database_url,
        jwt_secret=os.getenv("JWT_SECRET"),
        mp_access_token=os.getenv("MP_ACCESS_TOKEN", ""),
        mp_webhook_secret=os.getenv("MP_WEBHOOK_SECRET", ""),
        mp_api_base=os.getenv("MP_API_BASE", "https://api.mercadopago.com").rstrip("/"),
        mp_use_sandbox=_flag(os.getenv("MP_USE_SANDBOX")),
        app_url=os.getenv("APP_URL", "http://localhost:8000").rstrip("/"),
        currency=validate_currency(os.getenv("STORE_CURRENCY")),
        reservation_ttl_minutes=int(os.getenv("RESERVATION_TTL_MINUTES", "30")),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")),
        http_max_retries=int(os.getenv("HTTP_MAX_RETRIES", "3")),
        signature_schemes=parse_schemes(os.getenv("WEBHOOK_SIGNATURE_SCHEMES")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
