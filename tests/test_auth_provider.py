"""Tests for pluggable auth provider system."""

import os
from unittest.mock import patch

import pytest

from roomrelay.auth_provider import (
    AuthResult,
    extract_bearer_token,
    get_auth_method_name,
    is_auth_enabled,
    resolve_principal,
    verify_bearer_token,
)


def _mock_module(**attrs):
    return type("MockAuth", (), {name: staticmethod(fn) for name, fn in attrs.items()})


@pytest.fixture
def auth_module():
    """Configure a mock auth module accepting the token 'good' for carol."""

    def verify(token):
        if token == "good":
            return AuthResult(valid=True, username="carol")
        return AuthResult(valid=False, error="Invalid token")

    module = _mock_module(verify_bearer_token=verify)
    with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "mock_auth"}):
        with patch("roomrelay.auth_provider.importlib.import_module", return_value=module):
            yield module


class TestAuthResult:
    def test_auth_result_defaults(self):
        result = AuthResult(valid=True)
        assert result.valid is True
        assert result.username is None
        assert result.metadata is None
        assert result.error is None


class TestIsAuthEnabled:
    def test_disabled_when_no_config(self):
        with patch.dict(os.environ, {}, clear=True):
            assert is_auth_enabled() is False

    def test_enabled_with_custom_module(self, auth_module):
        assert is_auth_enabled() is True

    def test_module_can_disable_itself(self):
        module = _mock_module(is_enabled=lambda: False)
        with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "mock_auth"}):
            with patch("roomrelay.auth_provider.importlib.import_module", return_value=module):
                assert is_auth_enabled() is False

    def test_import_failure(self):
        with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "no_such_module_anywhere"}):
            with pytest.raises(ImportError, match="Failed to import auth module"):
                is_auth_enabled()


class TestGetAuthMethodName:
    def test_returns_none_when_no_config(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_auth_method_name() == "none"

    def test_returns_custom_module_name(self):
        with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "myapp.auth"}):
            assert get_auth_method_name() == "custom:myapp.auth"


class TestExtractBearerToken:
    def test_valid_bearer_token(self):
        assert extract_bearer_token("Bearer abc123") == "abc123"

    def test_case_insensitive_scheme(self):
        assert extract_bearer_token("bearer abc123") == "abc123"

    def test_missing_header(self):
        assert extract_bearer_token(None) is None

    def test_wrong_scheme(self):
        assert extract_bearer_token("Basic dXNlcjpwYXNz") is None

    def test_no_token(self):
        assert extract_bearer_token("Bearer") is None

    def test_module_override(self):
        module = _mock_module(extract_bearer_token=lambda header: "from-module")
        with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "mock_auth"}):
            with patch("roomrelay.auth_provider.importlib.import_module", return_value=module):
                assert extract_bearer_token("Token xyz") == "from-module"


class TestVerifyBearerToken:
    def test_not_configured(self):
        with patch.dict(os.environ, {}, clear=True):
            result = verify_bearer_token("anything")
        assert result.valid is False
        assert result.error == "Authentication is not configured"

    def test_valid_token(self, auth_module):
        result = verify_bearer_token("good")
        assert result.valid is True
        assert result.username == "carol"

    def test_missing_username_is_invalid(self):
        module = _mock_module(verify_bearer_token=lambda token: AuthResult(valid=True))
        with patch.dict(os.environ, {"ROOMRELAY_AUTH_MODULE": "mock_auth"}):
            with patch("roomrelay.auth_provider.importlib.import_module", return_value=module):
                result = verify_bearer_token("good")
        assert result.valid is False


class TestResolvePrincipal:
    def test_no_credentials_is_legacy(self, auth_module):
        assert resolve_principal(None) is None

    def test_header_token(self, auth_module):
        result = resolve_principal("Bearer good")
        assert result.valid is True
        assert result.username == "carol"

    def test_query_token(self, auth_module):
        assert resolve_principal(None, "good").username == "carol"

    def test_invalid_token(self, auth_module):
        result = resolve_principal("Bearer bad")
        assert result.valid is False
        assert result.error == "Invalid token"

    def test_malformed_header(self, auth_module):
        result = resolve_principal("Basic abc")
        assert result.valid is False

    def test_token_without_auth_configured(self):
        with patch.dict(os.environ, {}, clear=True):
            result = resolve_principal("Bearer good")
        assert result.valid is False
