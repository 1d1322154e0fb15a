"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
manager do the work; these only carry shape.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from auth.tokens import TokenClaims


@dataclass(frozen=True)
class CredentialRecord:
    """A principal's login credential as read from the identity store.

    principal_id is the stable identity the rest of the application references;
    identifier is the login name presented at login. The record is replaced
    wholesale on password change -- callers must follow that with
    SessionManager.revoke_all(principal_id).
    """

    principal_id: str
    identifier: str
    password_hash: str
    algorithm: str  # HashAlgorithm tag, e.g. "bcrypt"
    is_active: bool = True
    created_at: Optional[str] = None
    password_changed_at: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    """Result of a successful login or refresh.

    expires_in is the access token lifetime in seconds, as reported to clients
    in the OAuth-style token response.
    """

    access_token: str
    refresh_token: str
    access_claims: TokenClaims
    refresh_claims: TokenClaims
    expires_in: int
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
