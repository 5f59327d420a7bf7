import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Settings:
    """Centralised billing configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
        self.max_payment_failures = self._get_int("MAX_PAYMENT_FAILURES", default=3)
        self.payment_retry_delay_days = self._get_int("PAYMENT_RETRY_DELAY_DAYS", default=3)
        self.renewal_batch_size = self._get_int("RENEWAL_BATCH_SIZE", default=50)
        self.renewal_item_delay_ms = self._get_int("RENEWAL_ITEM_DELAY_MS", default=100)
        self.renewal_workers = self._get_int("RENEWAL_WORKERS", default=1)
        self.renewal_interval_seconds = self._get_float("RENEWAL_INTERVAL_SECONDS", default=0.0)
        self.gateway_timeout_seconds = self._get_float("GATEWAY_TIMEOUT_SECONDS", default=30.0)
        self.lease_ttl_seconds = self._get_float("LEASE_TTL_SECONDS", default=300.0)
        self.trial_reminder_days = self._get_int("TRIAL_REMINDER_DAYS", default=3)
        self.incomplete_expiry_hours = self._get_int("INCOMPLETE_EXPIRY_HOURS", default=23)
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.smtp_host = os.getenv("SMTP_HOST")
        self.smtp_port = self._get_int("SMTP_PORT", default=587)
        self.smtp_username = os.getenv("SMTP_USERNAME")
        self.smtp_password = os.getenv("SMTP_PASSWORD")
        self.smtp_from_email = os.getenv("SMTP_FROM_EMAIL")
        self.smtp_from_name = os.getenv("SMTP_FROM_NAME", "Billing")

        if self.max_payment_failures < 1:
            raise RuntimeError("MAX_PAYMENT_FAILURES must be at least 1")
        if self.renewal_batch_size < 1:
            raise RuntimeError("RENEWAL_BATCH_SIZE must be at least 1")
        if self.lease_ttl_seconds <= self.gateway_timeout_seconds:
            # The lease must outlive the slowest gateway charge.
            raise RuntimeError("LEASE_TTL_SECONDS must be greater than GATEWAY_TIMEOUT_SECONDS")

    @property
    def renewal_item_delay(self) -> float:
        return self.renewal_item_delay_ms / 1000

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_float(key: str, default: Optional[float] = None) -> float:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a number") from exc
