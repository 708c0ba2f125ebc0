"""Tests for services.oauth."""

from __future__ import annotations

import hashlib
import hmac
import sqlite3
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from api.exceptions import (
    AppError,
    InvalidOAuthStateError,
    InvalidSignatureError,
    ShopifySyncError,
    ValidationError,
)
from config import settings
from database.models import (
    consume_oauth_state,
    create_connection,
    get_connection_by_domain,
    set_approved_vendors,
    update_connection,
)
from services.oauth import (
    begin_authorization,
    complete_authorization,
    is_valid_shop_domain,
    normalize_shop_domain,
    purge_expired_states,
    verify_callback_hmac,
)

SHOP_DOMAIN = "test.myshopify.com"
TOKEN_URL = f"https://{SHOP_DOMAIN}/admin/oauth/access_token"


def _sign(params: dict[str, str], secret: str = "test-api-secret") -> dict[str, str]:
    message = "&".join(f"{k}={params[k]}" for k in sorted(params))
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return {**params, "hmac": digest}


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def _callback_params(state: str, shop: str = SHOP_DOMAIN) -> dict[str, str]:
    return _sign({"shop": shop, "code": "auth-code", "state": state, "timestamp": "1700000000"})


class TestShopDomain:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("test", "test.myshopify.com"),
            ("test.myshopify.com", "test.myshopify.com"),
            ("https://Test.myshopify.com/", "test.myshopify.com"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_shop_domain(raw) == expected

    def test_validation(self) -> None:
        assert is_valid_shop_domain("my-store.myshopify.com")
        assert not is_valid_shop_domain("evil.com")
        assert not is_valid_shop_domain("-bad.myshopify.com")


class TestBeginAuthorization:
    def test_builds_consent_url_and_stores_state(self, db: sqlite3.Connection) -> None:
        url = begin_authorization(db, "test")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == SHOP_DOMAIN
        assert parsed.path == "/admin/oauth/authorize"
        assert query["client_id"] == ["test-api-key"]
        assert query["redirect_uri"] == [settings.shopify_redirect_uri]
        assert len(query["state"][0]) == 64

        stored = consume_oauth_state(db, query["state"][0])
        assert stored["shop_domain"] == SHOP_DOMAIN

    def test_missing_shop(self, db: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError):
            begin_authorization(db, None)

    def test_invalid_shop(self, db: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError, match="myshopify.com"):
            begin_authorization(db, "bad_shop!")

    def test_missing_credentials(
        self, db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "shopify_api_key", "")
        with pytest.raises(AppError, match="not configured"):
            begin_authorization(db, "test")


class TestVerifyCallbackHmac:
    def test_valid(self) -> None:
        assert verify_callback_hmac(_sign({"shop": SHOP_DOMAIN, "code": "x"}))

    def test_tampered(self) -> None:
        params = _sign({"shop": SHOP_DOMAIN, "code": "x"})
        params["code"] = "y"
        assert not verify_callback_hmac(params)

    def test_missing_hmac(self) -> None:
        assert not verify_callback_hmac({"shop": SHOP_DOMAIN})

    def test_no_secret(self) -> None:
        assert not verify_callback_hmac(_sign({"shop": SHOP_DOMAIN}), secret="")


class TestCompleteAuthorization:
    @responses.activate
    def test_creates_connection(self, db: sqlite3.Connection) -> None:
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "shpat_new", "scope": "read_products,read_inventory"},
        )
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))

        connection = complete_authorization(db, _callback_params(state))

        assert connection["access_token"] == "shpat_new"
        assert connection["scopes"] == "read_products,read_inventory"
        assert connection["setup_complete"] is False
        assert connection["is_active"] is True

    @responses.activate
    def test_state_is_single_use(self, db: sqlite3.Connection) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "shpat_new"})
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))
        complete_authorization(db, _callback_params(state))
        with pytest.raises(InvalidOAuthStateError):
            complete_authorization(db, _callback_params(state))

    def test_unknown_state(self, db: sqlite3.Connection) -> None:
        with pytest.raises(InvalidOAuthStateError):
            complete_authorization(db, _callback_params("not-a-state"))

    def test_state_bound_to_shop(self, db: sqlite3.Connection) -> None:
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))
        with pytest.raises(InvalidOAuthStateError):
            complete_authorization(db, _callback_params(state, shop="other.myshopify.com"))

    def test_expired_state(self, db: sqlite3.Connection) -> None:
        issued = datetime.now(UTC) - timedelta(hours=1)
        state = _state_from(begin_authorization(db, SHOP_DOMAIN, now=issued))
        with pytest.raises(InvalidOAuthStateError):
            complete_authorization(db, _callback_params(state))

    def test_bad_hmac(self, db: sqlite3.Connection) -> None:
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))
        params = _callback_params(state)
        params["hmac"] = "0" * 64
        with pytest.raises(InvalidSignatureError):
            complete_authorization(db, params)

    def test_missing_params(self, db: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError):
            complete_authorization(db, {"shop": SHOP_DOMAIN})

    @responses.activate
    def test_failed_exchange(self, db: sqlite3.Connection) -> None:
        responses.add(responses.POST, TOKEN_URL, status=400, json={"error": "invalid_request"})
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))
        with pytest.raises(ShopifySyncError):
            complete_authorization(db, _callback_params(state))

    @responses.activate
    def test_reauthorizing_active_connection_keeps_setup(self, db: sqlite3.Connection) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "shpat_rotated"})
        existing = create_connection(db, SHOP_DOMAIN, "shpat_old")
        set_approved_vendors(db, existing["id"], ["Acme"])
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))

        connection = complete_authorization(db, _callback_params(state))

        assert connection["id"] == existing["id"]
        assert connection["access_token"] == "shpat_rotated"
        assert connection["setup_complete"] is True
        assert connection["approved_vendors"] == ["Acme"]

    @responses.activate
    def test_reinstall_requires_setup_again(self, db: sqlite3.Connection) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "shpat_back"})
        existing = create_connection(db, SHOP_DOMAIN, "shpat_old")
        set_approved_vendors(db, existing["id"], None)
        update_connection(db, existing["id"], is_active=0, access_token=None)
        state = _state_from(begin_authorization(db, SHOP_DOMAIN))

        connection = complete_authorization(db, _callback_params(state))

        assert connection["is_active"] is True
        assert connection["setup_complete"] is False
        assert get_connection_by_domain(db, SHOP_DOMAIN)["access_token"] == "shpat_back"


def test_purge_expired_states(db: sqlite3.Connection) -> None:
    old = datetime.now(UTC) - timedelta(hours=2)
    begin_authorization(db, SHOP_DOMAIN, now=old)
    fresh = _state_from(begin_authorization(db, SHOP_DOMAIN))
    assert purge_expired_states(db) == 1
    assert consume_oauth_state(db, fresh) is not None
