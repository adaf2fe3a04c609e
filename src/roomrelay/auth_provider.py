"""Pluggable authentication for roomrelay connections.

The engine never checks passwords or signs tokens. It consumes a resolved
principal from an auth module configured by environment variable:

- ROOMRELAY_AUTH_MODULE: Python module path for the auth collaborator
  (e.g., 'myapp.relay_auth')

Auth modules must expose:
- verify_bearer_token(token: str) -> AuthResult
- is_enabled() -> bool (optional, assumed True)
- extract_bearer_token(authorization: str | None) -> str | None (optional)

Accounts are created by the collaborator through db.create_account().
A connection that presents no token at all is a legacy connection.
"""

import importlib
import os
from dataclasses import dataclass


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    username: str | None = None
    metadata: dict | None = None
    error: str | None = None


def _get_auth_module():
    """Get the configured auth module, or None if not configured."""
    custom_module = os.environ.get("ROOMRELAY_AUTH_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{custom_module}': {e}") from e
    return None


def is_auth_enabled() -> bool:
    """Check if an auth module is configured and enabled."""
    module = _get_auth_module()
    if module is None:
        return False
    if hasattr(module, "is_enabled"):
        return module.is_enabled()
    return True


def verify_bearer_token(token: str) -> AuthResult:
    """
    Verify a bearer token using the configured auth module.

    Args:
        token: The bearer token to verify

    Returns:
        AuthResult naming the account on success
    """
    module = _get_auth_module()
    if module is None or not is_auth_enabled():
        return AuthResult(valid=False, error="Authentication is not configured")

    result = module.verify_bearer_token(token)
    if result.valid and not result.username:
        return AuthResult(valid=False, error="Auth module returned no username")
    return result


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Uses the auth module's implementation if available, otherwise default.
    """
    module = _get_auth_module()
    if module and hasattr(module, "extract_bearer_token"):
        return module.extract_bearer_token(authorization)

    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None


def resolve_principal(authorization: str | None, query_token: str | None = None) -> AuthResult | None:
    """Resolve the credentials a connection presented at handshake.

    Returns:
        None when no credentials were presented (legacy connection),
        otherwise the AuthResult, which may be invalid.
    """
    token = extract_bearer_token(authorization) or (query_token or None)
    if token is None:
        if authorization:
            return AuthResult(valid=False, error="Malformed Authorization header")
        return None
    return verify_bearer_token(token)


def get_auth_method_name() -> str:
    """Get the name of the current auth method for logging/debugging."""
    custom_module = os.environ.get("ROOMRELAY_AUTH_MODULE")
    if custom_module:
        return f"custom:{custom_module}"
    return "none"
