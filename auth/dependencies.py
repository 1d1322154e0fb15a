"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected routes take the caller's identity from an
``Authorization: Bearer <access token>`` header. The token is handed to the
SessionManager wired into app.state during lifespan startup; nothing here
decodes or checks tokens on its own.

Error mapping (one place, shared by the auth routes):
  TokenError (malformed, expired, revoked) -> 401 "unauthenticated"
  StoreUnavailable                         -> 503 "auth_unavailable"
The three token failures are deliberately collapsed so a client cannot tell
which check rejected it.

These helpers are plain ``def`` functions: FastAPI runs them in its threadpool,
so the blocking cache round trip never stalls the event loop.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.errors import AuthError, StoreUnavailable, TokenError
from auth.session import SessionManager
from auth.tokens import TokenClaims

_BEARER_PREFIX = "bearer "


def http_error_for(exc: AuthError) -> HTTPException:
    """Translate a per-request AuthError into the HTTPException the API returns."""
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=503,
            detail={"code": "auth_unavailable", "message": "Authentication is temporarily unavailable."},
            headers={"Retry-After": "5"},
        )
    if isinstance(exc, TokenError):
        return HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return HTTPException(
        status_code=401,
        detail={"code": exc.code, "message": str(exc)},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_bearer_token(request: Request) -> str:
    """Return the raw token from the Authorization header. Raises HTTP 401 if absent."""
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        token = header[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    raise HTTPException(
        status_code=401,
        detail={"code": "unauthenticated", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_claims(
    token: str = Depends(get_bearer_token),
    sessions: SessionManager = Depends(get_sessions),
) -> TokenClaims:
    """Require a valid, unrevoked access token and return its claims.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    try:
        return sessions.authenticate_claims(token)
    except AuthError as exc:
        raise http_error_for(exc) from None


def get_current_principal(claims: TokenClaims = Depends(get_current_claims)) -> str:
    """Require authentication and return only the principal id."""
    return claims.principal
