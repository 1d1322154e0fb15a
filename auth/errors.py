"""
auth/errors.py -- Exception taxonomy for the authentication core.

Two separate roots:

  AuthError          -- per-request failures. Always recoverable by the caller
                        (reject the request). Each subclass carries a stable
                        ``code`` so the HTTP layer can map it without string
                        matching. Messages never contain secrets or tokens.

  ConfigurationError -- deployment/data problems (missing signing key,
                        unparseable stored hash). Fatal at startup; when one
                        surfaces per-request (a corrupt hash row) the session
                        layer logs it for operators and answers the end user
                        with InvalidCredentials.

MalformedToken, ExpiredToken and Revoked are distinguishable here for
diagnostics and tests, but the API boundary collapses them into a single
"unauthenticated" response so clients learn nothing about which check failed.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for per-request authentication failures."""

    code = "auth_error"


class InvalidCredentials(AuthError):
    """Wrong secret, unknown identifier, or inactive account -- deliberately indistinguishable."""

    code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials.") -> None:
        super().__init__(message)


class TokenError(AuthError):
    """Base class for anything wrong with a presented token."""

    code = "invalid_token"


class MalformedToken(TokenError):
    """Cannot parse, signature mismatch, wrong type/issuer/audience, or missing claims."""

    code = "malformed_token"

    def __init__(self, message: str = "Malformed token.") -> None:
        super().__init__(message)


class ExpiredToken(TokenError):
    """Well-formed and correctly signed, but past its expiry (plus leeway)."""

    code = "expired_token"

    def __init__(self, message: str = "Token has expired.") -> None:
        super().__init__(message)


class Revoked(TokenError):
    """Structurally valid token invalidated by logout or a revoke-all marker."""

    code = "revoked_token"

    def __init__(self, message: str = "Token has been revoked.") -> None:
        super().__init__(message)


class StoreUnavailable(AuthError):
    """The revocation store could not be consulted or written.

    Raised instead of guessing "not revoked". Whether authenticate() surfaces it
    or accepts the token anyway is the SessionManager's failure policy.
    """

    code = "store_unavailable"

    def __init__(self, message: str = "Revocation store unavailable.") -> None:
        super().__init__(message)


class ConfigurationError(Exception):
    """Invalid deployment configuration or corrupt credential data."""

    code = "configuration_error"


class MalformedHashError(ConfigurationError):
    """A stored password hash does not match the configured algorithm or cannot be parsed."""

    code = "malformed_hash"
