import os
from decimal import Decimal, InvalidOperation
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/billsync"
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Base URL of the billing UI; the storefront gets a link to the invoice.
        self.app_url = (os.getenv("APP_URL") or "http://localhost:3000").rstrip("/")

        self.integration_type = os.getenv("STOREFRONT_INTEGRATION_TYPE", "storefront").strip() or "storefront"
        self.storefront_timeout_seconds = max(1, _env_int("STOREFRONT_TIMEOUT_SECONDS", 30))
        # When set, integrations without a webhook secret are rejected instead of trusted.
        self.webhook_require_signature = _truthy(os.getenv("WEBHOOK_REQUIRE_SIGNATURE", ""))

        self.sync_summary_limit = max(1, _env_int("SYNC_SUMMARY_LIMIT", 10))
        self.bulk_max_rows = max(1, _env_int("BULK_MAX_ROWS", 100))
        self.bulk_delete_max_rows = max(1, _env_int("BULK_DELETE_MAX_ROWS", 50))
        self.default_tax_rate = _env_decimal("DEFAULT_TAX_RATE", "18")


settings = Settings()
