import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

ENV_PRODUCTION = "production"
ENV_SANDBOX = "sandbox"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _positive_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        return default


def _positive_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        return default


def _normalize_environment(raw: str) -> str:
    value = (raw or "").strip().lower()
    if value in {"production", "prod", "live"}:
        return ENV_PRODUCTION
    return ENV_SANDBOX


@dataclass(frozen=True)
class CashfreeCredentials:
    app_id: str
    secret_key: str
    webhook_secret: str

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.secret_key)


@dataclass(frozen=True)
class PhonePeCredentials:
    merchant_id: str
    salt_key: str
    salt_index: str

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.salt_key and self.salt_index)


@dataclass(frozen=True)
class RupeePaymentsCredentials:
    key: str

    @property
    def configured(self) -> bool:
        return bool(self.key)


@dataclass(frozen=True)
class Settings:
    """Process-wide payment configuration, built once at startup."""

    environment: str
    client_url: str
    api_url: str
    amount_minor_units: int
    currency: str
    order_ttl_minutes: int
    provider_timeout_seconds: float
    cashfree: CashfreeCredentials
    phonepe: PhonePeCredentials
    rupeepayments: RupeePaymentsCredentials

    @property
    def is_production(self) -> bool:
        return self.environment == ENV_PRODUCTION

    @property
    def webhook_url(self) -> str:
        return f"{self.api_url}/api/subscription/webhook"

    @classmethod
    def from_env(cls) -> "Settings":
        cashfree_secret = _env("CASHFREE_SECRET_KEY")
        return cls(
            environment=_normalize_environment(_env("ENVIRONMENT", ENV_SANDBOX)),
            client_url=(_env("CLIENT_URL") or _env("CORS_ORIGIN") or "http://localhost:5173").rstrip("/"),
            api_url=(_env("API_URL") or "http://localhost:8000").rstrip("/"),
            amount_minor_units=_positive_int("SUBSCRIPTION_AMOUNT_PAISE", 20000),
            currency=(_env("SUBSCRIPTION_CURRENCY", "INR") or "INR").upper(),
            order_ttl_minutes=_positive_int("ORDER_TTL_MINUTES", 30),
            provider_timeout_seconds=_positive_float("PROVIDER_TIMEOUT_SECONDS", 10.0),
            cashfree=CashfreeCredentials(
                app_id=_env("CASHFREE_APP_ID"),
                secret_key=cashfree_secret,
                # Cashfree signs webhooks with the client secret unless a dedicated one is issued.
                webhook_secret=_env("CASHFREE_WEBHOOK_SECRET") or cashfree_secret,
            ),
            phonepe=PhonePeCredentials(
                merchant_id=_env("PHONEPE_MERCHANT_ID"),
                salt_key=_env("PHONEPE_SALT_KEY"),
                salt_index=_env("PHONEPE_SALT_INDEX", "1"),
            ),
            rupeepayments=RupeePaymentsCredentials(key=_env("RUPEEPAYMENTS_KEY")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
