"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

load_dotenv()

_PROJECT_ROOT = Path(__file__).resolve().parent

logger = logging.getLogger(__name__)


class Config(BaseModel):
    """Centralised app configuration backed by env vars."""

    # Shopify app credentials
    shopify_api_key: str = ""
    shopify_api_secret: str = ""
    shopify_api_version: str = "2025-10"
    shopify_scopes: str = "read_products,read_inventory,read_locations"
    shopify_redirect_uri: str = ""
    shopify_webhook_secret: str = ""

    # Storage
    database_path: str = str(_PROJECT_ROOT / "data" / "restock.db")

    # Sync tuning
    sync_page_size: int = 50
    sync_max_pages: int = 200
    sync_max_retries: int = 3
    sync_request_timeout: int = 30
    default_low_stock_threshold: int = 10

    # Restock approvals / OAuth
    magic_token_ttl_hours: int = 168
    oauth_state_ttl_seconds: int = 600

    # Flask
    flask_host: str = "127.0.0.1"
    flask_port: int = 5000
    flask_debug: bool = True
    flask_secret_key: str = "change-me-in-production"  # noqa: S105
    cors_origins: list[str] = ["http://localhost:5173"]

    # Webhook server
    webhook_host: str = "0.0.0.0"  # noqa: S104
    webhook_port: int = 5001

    @model_validator(mode="after")
    def _warn_empty_critical_fields(self) -> Config:
        """Log warnings when critical integration fields are empty."""
        if not self.shopify_api_key or not self.shopify_api_secret:
            logger.warning("SHOPIFY_API_KEY / SHOPIFY_API_SECRET not set, OAuth install will fail")
        if not self.webhook_secret:
            logger.warning("No webhook secret configured, all webhooks will be rejected")
        return self

    @property
    def webhook_secret(self) -> str:
        """Secret used for webhook HMAC checks (falls back to the API secret)."""
        return self.shopify_webhook_secret or self.shopify_api_secret

    @classmethod
    def from_env(cls) -> Config:
        """Build config from environment variables."""
        cors_raw = os.getenv("CORS_ORIGINS", "http://localhost:5173")
        cors_origins = [o.strip() for o in cors_raw.split(",") if o.strip()]

        return cls(
            shopify_api_key=os.getenv("SHOPIFY_API_KEY", ""),
            shopify_api_secret=os.getenv("SHOPIFY_API_SECRET", ""),
            shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2025-10"),
            shopify_scopes=os.getenv(
                "SHOPIFY_SCOPES", "read_products,read_inventory,read_locations"
            ),
            shopify_redirect_uri=os.getenv("SHOPIFY_REDIRECT_URI", ""),
            shopify_webhook_secret=os.getenv("SHOPIFY_WEBHOOK_SECRET", ""),
            database_path=os.getenv(
                "DATABASE_PATH", str(_PROJECT_ROOT / "data" / "restock.db")
            ),
            sync_page_size=int(os.getenv("SYNC_PAGE_SIZE", "50")),
            sync_max_pages=int(os.getenv("SYNC_MAX_PAGES", "200")),
            sync_max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
            sync_request_timeout=int(os.getenv("SYNC_REQUEST_TIMEOUT", "30")),
            default_low_stock_threshold=int(os.getenv("DEFAULT_LOW_STOCK_THRESHOLD", "10")),
            magic_token_ttl_hours=int(os.getenv("MAGIC_TOKEN_TTL_HOURS", "168")),
            oauth_state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
            flask_host=os.getenv("FLASK_HOST", "127.0.0.1"),
            flask_port=int(os.getenv("FLASK_PORT", "5000")),
            flask_debug=os.getenv("FLASK_DEBUG", "true").lower() in ("1", "true", "yes"),
            flask_secret_key=os.getenv("FLASK_SECRET_KEY", "change-me-in-production"),
            cors_origins=cors_origins,
            webhook_host=os.getenv("WEBHOOK_HOST", "0.0.0.0"),  # noqa: S104
            webhook_port=int(os.getenv("WEBHOOK_PORT", "5001")),
        )


settings = Config.from_env()
