import base64
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import structlog
from dotenv import load_dotenv

from hotel_payments.errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent

SANDBOX_API_URL = "https://api.sandbox.moyasar.com/v1/"
PRODUCTION_API_URL = "https://api.moyasar.com/v1/"

SUPPORTED_CURRENCIES = ("SAR", "USD", "AED", "EGP", "QAR", "KWD", "BHD", "OMR")
DEVELOPMENT_ENVIRONMENTS = ("development", "test")


def _split(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


@dataclass(frozen=True)
class Timeouts:
    """Per-call limits in seconds."""

    connect: float = 15.0
    read: float = 30.0
    write: float = 30.0


@dataclass(frozen=True)
class GatewayConfig:
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None
    api_url: str = PRODUCTION_API_URL
    currency: str = "SAR"
    supported_networks: Tuple[str, ...] = ("mada", "visa", "mastercard")
    webhook_secret: Optional[str] = None
    timeouts: Timeouts = field(default_factory=Timeouts)
    default_installments: int = 1
    enabled_methods: Tuple[str, ...] = ("creditcard", "stcpay", "url")
    environment: str = "production"
    public_base_url: str = "http://127.0.0.1:8000"
    user_agent: str = "WhelHost-Hotel-Reservation-App/1.0"

    def __post_init__(self):
        # relative paths are joined onto the base url, which needs the trailing slash
        if self.api_url and not self.api_url.endswith("/"):
            object.__setattr__(self, "api_url", self.api_url + "/")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "GatewayConfig":
        load_dotenv(dotenv_path=env_file or BASE_DIR / ".env")

        environment = os.getenv("APP_ENV", "production")
        default_url = SANDBOX_API_URL if environment in DEVELOPMENT_ENVIRONMENTS else PRODUCTION_API_URL

        return cls(
            secret_key=os.getenv("MOYASAR_SECRET_KEY") or None,
            publishable_key=os.getenv("MOYASAR_PUBLISHABLE_KEY") or None,
            api_url=os.getenv("MOYASAR_API_URL") or default_url,
            currency=os.getenv("MOYASAR_CURRENCY", "SAR"),
            supported_networks=_split(
                os.getenv("MOYASAR_SUPPORTED_NETWORKS"), ("mada", "visa", "mastercard")
            ),
            webhook_secret=os.getenv("MOYASAR_WEBHOOK_SECRET") or None,
            timeouts=Timeouts(
                connect=float(os.getenv("MOYASAR_CONNECT_TIMEOUT", "15")),
                read=float(os.getenv("MOYASAR_READ_TIMEOUT", "30")),
                write=float(os.getenv("MOYASAR_WRITE_TIMEOUT", "30")),
            ),
            default_installments=int(os.getenv("MOYASAR_DEFAULT_INSTALLMENTS", "1")),
            enabled_methods=_split(
                os.getenv("MOYASAR_PAYMENT_METHODS"), ("creditcard", "stcpay", "url")
            ),
            environment=environment,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000"),
            user_agent=os.getenv("USER_AGENT", "WhelHost-Hotel-Reservation-App/1.0"),
        )

    @property
    def is_sandbox(self) -> bool:
        return (
            (self.secret_key or "").startswith("sk_test_")
            or (self.publishable_key or "").startswith("pk_test_")
            or self.environment == "development"
        )

    @property
    def default_callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhook"

    def validate(self) -> None:
        """Raise ConfigurationError unless outbound calls can be made."""
        if not self.secret_key:
            raise ConfigurationError("MOYASAR_SECRET_KEY environment variable is required")
        if not self.publishable_key:
            raise ConfigurationError("MOYASAR_PUBLISHABLE_KEY environment variable is required")
        if not self.api_url:
            raise ConfigurationError("MOYASAR_API_URL environment variable is required")

        parsed = urlparse(self.api_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid MOYASAR_API_URL configuration: {self.api_url}")

        if self.environment == "production" and self.secret_key.startswith("sk_test_"):
            raise ConfigurationError("Cannot use a test secret key in the production environment")

        if self.currency not in SUPPORTED_CURRENCIES:
            logger.warning("Currency is not officially supported by the gateway", currency=self.currency)

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError("MOYASAR_WEBHOOK_SECRET is not configured")
        return self.webhook_secret

    def auth_headers(self, include_content_type: bool = True) -> Dict[str, str]:
        if not self.secret_key:
            raise ConfigurationError("MOYASAR_SECRET_KEY environment variable is required")

        credentials = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        headers = {
            "Authorization": f"Basic {credentials}",
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }
        if include_content_type:
            headers["Content-Type"] = "application/json"
        return headers
