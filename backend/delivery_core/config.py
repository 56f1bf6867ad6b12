"""
Settings loaded from the environment (and a local .env file).

Missing gateway credentials are a startup error, not something to retry.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv

from .exceptions import ConfigurationError

ROOT_DIR = Path(__file__).resolve().parent.parent


@dataclass(frozen=True)
class Settings:
    mongo_url: str = "mongodb://localhost:27017/?replicaSet=rs0"
    db_name: str = "lpg_delivery"
    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    payment_currency: str = "GHS"
    transaction_timeout_ms: int = 30000
    transaction_retries: int = 3
    notification_timeout_ms: int = 5000
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """Build settings from os.environ after loading the .env file"""
        load_dotenv(env_file or ROOT_DIR / ".env")

        secret_key = os.environ.get("PAYSTACK_SECRET_KEY", "")

        try:
            return cls(
                mongo_url=os.environ.get("MONGO_URL", cls.mongo_url),
                db_name=os.environ.get("DB_NAME", cls.db_name),
                paystack_secret_key=secret_key,
                paystack_public_key=os.environ.get("PAYSTACK_PUBLIC_KEY", ""),
                # Paystack signs webhooks with the account secret key
                paystack_webhook_secret=os.environ.get("PAYSTACK_WEBHOOK_SECRET") or secret_key,
                paystack_base_url=os.environ.get("PAYSTACK_BASE_URL", cls.paystack_base_url),
                payment_currency=os.environ.get("PAYMENT_CURRENCY", cls.payment_currency),
                transaction_timeout_ms=int(os.environ.get("TRANSACTION_TIMEOUT_MS", cls.transaction_timeout_ms)),
                transaction_retries=int(os.environ.get("TRANSACTION_RETRIES", cls.transaction_retries)),
                notification_timeout_ms=int(os.environ.get("NOTIFICATION_TIMEOUT_MS", cls.notification_timeout_ms)),
                log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
                log_format=os.environ.get("LOG_FORMAT", cls.log_format).lower(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Malformed numeric setting: {e}") from e

    def validate(self) -> "Settings":
        """
        Fail fast on configuration that can never work.

        Raises ConfigurationError listing every problem found.
        """
        problems = []

        if not self.paystack_secret_key or not self.paystack_public_key:
            problems.append("Paystack configuration is missing")
        if not self.mongo_url:
            problems.append("MONGO_URL is not set")
        if self.transaction_timeout_ms <= 0:
            problems.append("TRANSACTION_TIMEOUT_MS must be positive")
        if self.transaction_retries < 1:
            problems.append("TRANSACTION_RETRIES must be at least 1")
        if self.log_format not in ("text", "json"):
            problems.append(f"Unsupported LOG_FORMAT: {self.log_format}")

        if problems:
            raise ConfigurationError("; ".join(problems))

        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
