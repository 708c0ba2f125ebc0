"""Config loading tests."""

from __future__ import annotations

import pytest

from config import Config


def test_config_defaults() -> None:
    """Config should load with sensible defaults when no env vars are set."""
    cfg = Config()
    assert cfg.flask_port == 5000
    assert cfg.webhook_port == 5001
    assert cfg.shopify_api_version == "2025-10"
    assert cfg.sync_page_size == 50
    assert cfg.sync_max_retries == 3
    assert cfg.default_low_stock_threshold == 10
    assert cfg.magic_token_ttl_hours == 168
    assert "restock.db" in cfg.database_path


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Config.from_env() reads from environment variables."""
    monkeypatch.setenv("FLASK_PORT", "9000")
    monkeypatch.setenv("SYNC_PAGE_SIZE", "25")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")
    cfg = Config.from_env()
    assert cfg.flask_port == 9000
    assert cfg.sync_page_size == 25
    assert cfg.cors_origins == ["https://a.example.com", "https://b.example.com"]


def test_webhook_secret_falls_back_to_api_secret() -> None:
    cfg = Config(shopify_api_secret="api-secret")
    assert cfg.webhook_secret == "api-secret"
    cfg = Config(shopify_api_secret="api-secret", shopify_webhook_secret="hook-secret")
    assert cfg.webhook_secret == "hook-secret"
