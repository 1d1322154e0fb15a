"""
auth/tokens.py -- Signed, time-bounded session tokens (JWT via python-jose).

Security design decisions:
  Format: compact JWS (header.payload.signature, base64url) with HMAC-SHA2.
       The algorithm is a closed SigningAlgorithm enum chosen at configuration
       time; decode() pins it, so a token whose header names any other
       algorithm ("none", RS256, ...) is rejected before claims are read.

  Claims: sub (principal), jti (uuid4 hex, drawn from os.urandom), iat, exp
       (NumericDate, millisecond resolution), iss, aud, typ ("access" or
       "refresh"). Refresh tokens also carry prf/pex -- the jti and expiry of
       the access token issued alongside them -- so logging out with a refresh
       token can revoke both halves of the pair.

  Signature first: jose.jwt.decode verifies the signature over the whole
       payload before any claim is returned. Expiry is then checked locally
       against the caller-supplied ``now`` so issue and decode share one clock
       source. The leeway only widens the expiry comparison.

  Canonical segments: base64 decoders ignore the spare low bits of the final
       character, so two different strings can decode to the same bytes.
       decode() re-encodes each segment and rejects non-canonical input, which
       makes every single-bit change to an encoded token detectable.

  Errors: every parse, signature, type, issuer or audience failure becomes
       MalformedToken with a fixed message (no oracle). A token that is
       otherwise valid but past exp + leeway becomes ExpiredToken.

Layer rule: no imports from api/. The signing key is held by the TokenCodec
instance, never by module state.
"""

from __future__ import annotations

import binascii
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from jose import JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from auth.errors import ConfigurationError, ExpiredToken, MalformedToken

logger = logging.getLogger("watchlist.auth")

_MIN_KEY_LENGTH = 32


class SigningAlgorithm(str, Enum):
    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Validated token contents. Only ever built from a verified token or at issue time."""

    principal: str
    token_id: str
    token_type: TokenType
    issued_at: float
    expires_at: float
    paired_token_id: Optional[str] = None
    paired_expires_at: Optional[float] = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims


def to_timestamp(moment: datetime) -> float:
    """Convert a datetime to epoch seconds at millisecond resolution. Naive values are read as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return round(moment.timestamp(), 3)


def new_token_id() -> str:
    return uuid.uuid4().hex


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_canonical_segment(segment: str) -> bool:
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except (UnicodeEncodeError, binascii.Error, ValueError):
        return False


class TokenCodec:
    """Issue and decode session tokens with one process-held signing key.

    Immutable after construction; safe for any number of concurrent readers.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        algorithm: SigningAlgorithm = SigningAlgorithm.HS256,
        access_lifetime: timedelta = timedelta(hours=1),
        refresh_lifetime: timedelta = timedelta(days=1),
        leeway: timedelta = timedelta(seconds=5),
        issuer: str = "watchlist",
        audience: str = "watchlist-api",
    ) -> None:
        if not signing_key:
            raise ConfigurationError("A signing key is required.")
        if len(signing_key) < _MIN_KEY_LENGTH:
            raise ConfigurationError(f"Signing key must be at least {_MIN_KEY_LENGTH} characters.")
        if access_lifetime <= timedelta(0) or refresh_lifetime <= timedelta(0):
            raise ConfigurationError("Token lifetimes must be positive.")
        if leeway < timedelta(0):
            raise ConfigurationError("Leeway must not be negative.")
        if not issuer or not audience:
            raise ConfigurationError("Issuer and audience must be non-empty.")
        self._key = signing_key
        self.algorithm = SigningAlgorithm(algorithm)
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self.leeway = leeway
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            settings.secret_key,
            algorithm=SigningAlgorithm(settings.jwt_algorithm),
            access_lifetime=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_lifetime=timedelta(seconds=settings.refresh_token_expire_seconds),
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    def __repr__(self) -> str:
        # Keep the key out of tracebacks and debug logs.
        return f"TokenCodec(algorithm={self.algorithm.value}, issuer={self.issuer!r}, audience={self.audience!r})"

    @property
    def max_lifetime(self) -> timedelta:
        return max(self.access_lifetime, self.refresh_lifetime)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _encode(self, claims: TokenClaims) -> str:
        payload: dict[str, Any] = {
            "sub": claims.principal,
            "jti": claims.token_id,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "iss": self.issuer,
            "aud": self.audience,
            "typ": claims.token_type.value,
        }
        if claims.token_type is TokenType.REFRESH:
            payload["prf"] = claims.paired_token_id
            payload["pex"] = claims.paired_expires_at
        return jwt.encode(payload, self._key, algorithm=self.algorithm.value)

    def issue(self, principal: str, now: datetime) -> IssuedToken:
        """Issue an access token for ``principal`` valid from ``now`` for the access lifetime."""
        if not principal:
            raise ValueError("principal must be non-empty")
        iat = to_timestamp(now)
        claims = TokenClaims(
            principal=principal,
            token_id=new_token_id(),
            token_type=TokenType.ACCESS,
            issued_at=iat,
            expires_at=round(iat + self.access_lifetime.total_seconds(), 3),
        )
        return IssuedToken(token=self._encode(claims), claims=claims)

    def issue_refresh(self, principal: str, now: datetime, paired: TokenClaims) -> IssuedToken:
        """Issue a refresh token bound to the access token described by ``paired``."""
        if paired.token_type is not TokenType.ACCESS or paired.principal != principal:
            raise ValueError("refresh token must pair with an access token of the same principal")
        iat = to_timestamp(now)
        claims = TokenClaims(
            principal=principal,
            token_id=new_token_id(),
            token_type=TokenType.REFRESH,
            issued_at=iat,
            expires_at=round(iat + self.refresh_lifetime.total_seconds(), 3),
            paired_token_id=paired.token_id,
            paired_expires_at=paired.expires_at,
        )
        return IssuedToken(token=self._encode(claims), claims=claims)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def _verified_payload(self, encoded: str) -> dict[str, Any]:
        if not isinstance(encoded, str) or not encoded:
            raise MalformedToken()
        segments = encoded.split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(s) for s in segments):
            raise MalformedToken()
        try:
            return jwt.decode(
                encoded,
                self._key,
                algorithms=[self.algorithm.value],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iss": True,
                    # exp/iat are checked below against the injected clock.
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require_exp": True,
                    "require_iat": True,
                    "require_sub": True,
                    "require_jti": True,
                },
            )
        except JWTError:
            raise MalformedToken() from None

    def _parse(self, encoded: str, expected_type: Optional[TokenType]) -> TokenClaims:
        payload = self._verified_payload(encoded)

        sub, jti = payload.get("sub"), payload.get("jti")
        iat, exp = payload.get("iat"), payload.get("exp")
        if not (isinstance(sub, str) and sub and isinstance(jti, str) and jti):
            raise MalformedToken()
        if not (_is_number(iat) and _is_number(exp)):
            raise MalformedToken()
        try:
            token_type = TokenType(payload.get("typ"))
        except ValueError:
            raise MalformedToken() from None
        if expected_type is not None and token_type is not expected_type:
            raise MalformedToken()

        paired_id = paired_exp = None
        if token_type is TokenType.REFRESH:
            paired_id, paired_exp = payload.get("prf"), payload.get("pex")
            if not (isinstance(paired_id, str) and paired_id and _is_number(paired_exp)):
                raise MalformedToken()

        return TokenClaims(
            principal=sub,
            token_id=jti,
            token_type=token_type,
            issued_at=float(iat),
            expires_at=float(exp),
            paired_token_id=paired_id,
            paired_expires_at=float(paired_exp) if paired_exp is not None else None,
        )

    def decode(
        self,
        encoded: str,
        now: datetime,
        *,
        expected_type: Optional[TokenType] = TokenType.ACCESS,
    ) -> TokenClaims:
        """Verify ``encoded`` and return its claims.

        ``expected_type=None`` accepts either token type.
        Raises MalformedToken or ExpiredToken; never returns unverified claims.
        """
        claims = self._parse(encoded, expected_type)
        if self.is_expired(claims, now):
            raise ExpiredToken()
        return claims

    def decode_allow_expired(self, encoded: str, *, expected_type: Optional[TokenType] = None) -> TokenClaims:
        """Verify ``encoded`` but skip the expiry check.

        Used by logout, which must accept a correctly signed token that is
        about to expire or already has. Raises MalformedToken only.
        """
        return self._parse(encoded, expected_type)

    def is_expired(self, claims: TokenClaims, now: datetime) -> bool:
        return claims.expires_at + self.leeway.total_seconds() <= to_timestamp(now)
