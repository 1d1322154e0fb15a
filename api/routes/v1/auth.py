"""
api/routes/v1/auth.py -- Session REST endpoints.

Routes:
  POST /api/v1/auth/login       -- password login; returns an access/refresh pair
  POST /api/v1/auth/refresh     -- exchange a refresh token for a new pair
  POST /api/v1/auth/logout      -- revoke the presented Bearer token
  POST /api/v1/auth/revoke-all  -- revoke every session of the caller
  POST /api/v1/auth/password    -- change password, then revoke every session
  GET  /api/v1/auth/me          -- current principal (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionManager.login() provides timing equalization -- use it, never
       inline a store lookup plus verify.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Malformed, expired and revoked tokens all answer 401 "unauthenticated".

All handlers are plain ``def``: password hashing and the revocation cache
round trip are blocking calls and run in FastAPI's threadpool.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, MeResponse, MessageResponse, PasswordChangeRequest, RefreshRequest, TokenResponse
from auth.dependencies import get_bearer_token, get_current_claims, get_sessions, http_error_for
from auth.errors import AuthError, InvalidCredentials, MalformedHashError
from auth.models import TokenPair
from auth.session import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenClaims

logger = logging.getLogger("watchlist.api")

# Auth policy:
# - POST /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:     public -- the refresh token in the body is the credential
# - POST /api/v1/auth/logout:      Bearer access or refresh token, expired accepted
# - POST /api/v1/auth/revoke-all:  requires auth (get_current_claims)
# - POST /api/v1/auth/password:    requires auth (get_current_claims)
# - GET  /api/v1/auth/me:          requires auth (get_current_claims)
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _bad_credentials() -> JSONResponse:
    resp = JSONResponse(
        status_code=401,
        content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a token pair.

    Returns the same generic error for unknown username, wrong password and
    disabled account ("bad_credentials").
    """
    sessions: SessionManager = request.app.state.sessions
    try:
        pair = sessions.login(body.username, body.password)
    except InvalidCredentials:
        return _bad_credentials()
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest, sessions: SessionManager = Depends(get_sessions)) -> JSONResponse:
    """Rotate a refresh token. The presented token is single-use."""
    try:
        pair = sessions.refresh(body.refresh_token)
    except AuthError as exc:
        raise http_error_for(exc) from None
    return _token_response(pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    token: str = Depends(get_bearer_token),
    sessions: SessionManager = Depends(get_sessions),
) -> MessageResponse:
    """Revoke the presented token. Logging out with a refresh token also revokes its access token."""
    try:
        sessions.logout(token)
    except AuthError as exc:
        raise http_error_for(exc) from None
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/revoke-all", response_model=MessageResponse)
def revoke_all(
    claims: TokenClaims = Depends(get_current_claims),
    sessions: SessionManager = Depends(get_sessions),
) -> MessageResponse:
    """Sign the caller out everywhere. The token used for this request stops working too."""
    try:
        sessions.revoke_all(claims.principal)
    except AuthError as exc:
        raise http_error_for(exc) from None
    return MessageResponse(message="All sessions revoked.")


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    claims: TokenClaims = Depends(get_current_claims),
    sessions: SessionManager = Depends(get_sessions),
) -> MessageResponse:
    """Replace the caller's password and revoke every existing session.

    The current password must be presented again; a stolen access token alone
    is not enough to take over the account.
    """
    store: CredentialStore = request.app.state.credentials
    record = store.get_by_principal(claims.principal)
    if record is None or not record.is_active:
        raise http_error_for(InvalidCredentials())

    try:
        matched = record.algorithm == sessions.hasher.algorithm.value and sessions.hasher.verify(
            body.current_password, record.password_hash
        )
    except MalformedHashError as exc:
        logger.error("Unusable credential record for principal %s: %s", record.principal_id, exc)
        matched = False
    if not matched:
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )

    try:
        new_hash = sessions.hasher.hash(body.new_password)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "validation_error", "message": str(exc)},
        ) from None

    store.update_password(record.principal_id, new_hash, sessions.hasher.algorithm)
    try:
        sessions.revoke_all(record.principal_id)
    except AuthError as exc:
        # The hash is already replaced; the operator must retry the revocation.
        logger.error("Password changed for principal %s but session revocation failed", record.principal_id)
        raise http_error_for(exc) from None
    logger.info("Password changed for principal %s; all sessions revoked", record.principal_id)
    return MessageResponse(message="Password changed. All sessions revoked.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    store: CredentialStore = request.app.state.credentials
    record = store.get_by_principal(claims.principal)
    return MeResponse(
        principal_id=claims.principal,
        username=record.identifier if record else None,
        token_id=claims.token_id,
        expires_at=claims.expires_at,
    )
