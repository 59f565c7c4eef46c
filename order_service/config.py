import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class Settings:
    def __init__(self):
        self.service_name = os.getenv("SERVICE_NAME", "order-service")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

        self.jwt_secret = os.getenv("JWT_SECRET")
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")

        self.default_currency = os.getenv("DEFAULT_CURRENCY", "USD").upper()
        self.gateway_timeout = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID")
        self.paypal_client_secret = os.getenv("PAYPAL_CLIENT_SECRET")
        self.paypal_environment = os.getenv("PAYPAL_ENVIRONMENT", "sandbox").lower()
        if self.paypal_environment not in PAYPAL_BASE_URLS:
            raise RuntimeError(
                f"PAYPAL_ENVIRONMENT must be one of {sorted(PAYPAL_BASE_URLS)}, "
                f"got {self.paypal_environment!r}"
            )

    @property
    def paypal_base_url(self) -> str:
        return os.getenv("PAYPAL_BASE_URL") or PAYPAL_BASE_URLS[self.paypal_environment]


@lru_cache
def get_settings() -> Settings:
    return Settings()

