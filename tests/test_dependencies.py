"""
Tests for Shopify session token verification.
"""

import pytest

from conftest import TEST_SHOP, make_session_token
from shopchat.api.dependencies import verify_session_token
from shopchat.config import Settings
from shopchat.exceptions import AuthenticationError


class TestVerifySessionToken:
    """Tests for verify_session_token."""

    def test_valid_token(self, test_settings: Settings) -> None:
        session = verify_session_token(make_session_token(), test_settings)

        assert session.shop == TEST_SHOP
        assert session.user_id == "42"

    def test_bad_signature(self, test_settings: Settings) -> None:
        with pytest.raises(AuthenticationError):
            verify_session_token(make_session_token(secret="wrong"), test_settings)

    def test_expired(self, test_settings: Settings) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            verify_session_token(make_session_token(expires_in=-120), test_settings)

        assert "expired" in exc_info.value.message

    def test_wrong_audience(self, test_settings: Settings) -> None:
        with pytest.raises(AuthenticationError):
            verify_session_token(make_session_token(audience="other-app"), test_settings)

    def test_garbage(self, test_settings: Settings) -> None:
        with pytest.raises(AuthenticationError):
            verify_session_token("not-a-jwt", test_settings)

    def test_secret_not_configured(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"shopify_api_secret": ""})

        with pytest.raises(AuthenticationError):
            verify_session_token(make_session_token(), settings)
