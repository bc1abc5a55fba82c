"""
Tests for bearer token authentication.
"""

import pytest

from conftest import JWT_SECRET
from shared.auth import authenticate_request, decode_session_token, get_bearer_token
from shared.errors import ConfigurationError, UnauthorizedError


class TestGetBearerToken:
    def test_reads_case_insensitive_header(self):
        assert get_bearer_token({"headers": {"authorization": "Bearer abc"}}) == "abc"

    def test_missing_or_wrong_scheme(self):
        assert get_bearer_token({"headers": {}}) is None
        assert get_bearer_token({"headers": {"Authorization": "Basic abc"}}) is None
        assert get_bearer_token({"headers": None}) is None


class TestDecodeSessionToken:
    def test_valid_token(self, settings, make_token):
        user = decode_session_token(make_token(user_id="u1", email="Kid@Example.com", username="kid"), settings)
        assert user.user_id == "u1"
        assert user.email == "kid@example.com"
        assert user.username == "kid"

    def test_token_without_email(self, settings, make_token):
        user = decode_session_token(make_token(email=None), settings)
        assert user.email is None

    def test_expired_token(self, settings, make_token):
        with pytest.raises(UnauthorizedError, match="expired"):
            decode_session_token(make_token(expires_in=-60), settings)

    def test_wrong_secret(self, settings, make_token):
        with pytest.raises(UnauthorizedError):
            decode_session_token(make_token(secret="another-secret-that-is-at-least-32-bytes"), settings)

    def test_garbage_token(self, settings):
        with pytest.raises(UnauthorizedError):
            decode_session_token("not-a-jwt", settings)

    def test_missing_secret_is_configuration_error(self, settings, make_token):
        from dataclasses import replace

        with pytest.raises(ConfigurationError):
            decode_session_token(make_token(), replace(settings, auth_jwt_secret=""))


class TestAuthenticateRequest:
    def test_missing_header(self, settings):
        with pytest.raises(UnauthorizedError) as exc_info:
            authenticate_request({"headers": {}}, settings)
        assert exc_info.value.status_code == 401

    def test_authenticates(self, settings, make_token):
        event = {"headers": {"Authorization": f"Bearer {make_token(user_id='u9')}"}}
        assert authenticate_request(event, settings).user_id == "u9"

    def test_uses_configured_secret(self, settings):
        assert settings.auth_jwt_secret == JWT_SECRET
