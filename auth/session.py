"""
auth/session.py -- Login, per-request authentication, refresh and revocation.

Pattern: Facade. SessionManager composes the four collaborators built at the
application edge (TokenCodec, PasswordHasher, a credential lookup and a
RevocationStore) and is the only object the HTTP layer talks to.

Security design decisions:
  [C1] Login gives one answer for every failure (unknown identifier, wrong
       secret, inactive account, corrupt hash row): InvalidCredentials. An
       unknown identifier still pays for one password verification against
       the hasher's dummy hash, so response time does not reveal which
       identifiers exist.

  [C2] authenticate() checks the signature and expiry before the revocation
       store is consulted. A forged or expired token never causes a cache
       round trip.

  [C3] Revocation store outage on the read path follows the configured
       StoreFailurePolicy. FAIL_CLOSED (default) rejects the request with
       StoreUnavailable; FAIL_OPEN accepts the structurally valid token and
       logs a warning. Writes (logout, revoke_all, refresh rotation) always
       raise, because the caller must learn that a revocation did not land.

  [C4] Refresh tokens are single-use. Rotation atomically marks the presented
       refresh token as consumed and revokes the access token issued with it
       before a new pair is handed out. A replayed refresh token is Revoked.

Every operation takes an optional ``now`` (tz-aware datetime; naive is read as
UTC). Production callers leave it out; tests pass it to step through time.

Layer rule: no imports from api/. cache/ is reached only through
RevocationStore.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from auth.errors import InvalidCredentials, MalformedHashError, Revoked, StoreUnavailable
from auth.models import CredentialRecord, TokenPair
from auth.passwords import PasswordHasher
from auth.revocation import RevocationStore
from auth.tokens import TokenClaims, TokenCodec, TokenType, to_timestamp

logger = logging.getLogger("watchlist.session")


class StoreFailurePolicy(str, Enum):
    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


class CredentialLookup(Protocol):
    """What the session manager needs from the identity store."""

    def find_credential(self, identifier: str) -> Optional[CredentialRecord]: ...


def _resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class SessionManager:
    """Session lifecycle for one deployment.

    Holds no mutable state of its own; every instance method is safe to call
    from concurrent request threads.

    Usage:
        sessions = SessionManager.from_settings(settings, credentials=store, cache=cache)
        pair = sessions.login("alice", "secret")
        principal = sessions.authenticate(pair.access_token)
        sessions.logout(pair.access_token)
    """

    def __init__(
        self,
        codec: TokenCodec,
        hasher: PasswordHasher,
        credentials: CredentialLookup,
        revocations: RevocationStore,
        *,
        failure_policy: StoreFailurePolicy = StoreFailurePolicy.FAIL_CLOSED,
    ) -> None:
        self.codec = codec
        self.hasher = hasher
        self.credentials = credentials
        self.revocations = revocations
        self.failure_policy = StoreFailurePolicy(failure_policy)

    @classmethod
    def from_settings(cls, settings, *, credentials: CredentialLookup, cache) -> "SessionManager":
        """Wire a manager from Settings, an identity store and a KeyValueStore."""
        codec = TokenCodec.from_settings(settings)
        revocations = RevocationStore(cache, max_lifetime=codec.max_lifetime, leeway=codec.leeway)
        return cls(
            codec,
            PasswordHasher.from_settings(settings),
            credentials,
            revocations,
            failure_policy=StoreFailurePolicy(settings.revocation_failure_policy),
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, now: Optional[datetime] = None) -> TokenPair:
        """Verify a credential and issue an access/refresh token pair.

        Raises InvalidCredentials for every kind of failure [C1].
        """
        moment = _resolve_now(now)
        record = self.credentials.find_credential(identifier) if identifier else None
        if record is None:
            self.hasher.dummy_verify(secret)
            logger.info("Login failed: unknown identifier")
            raise InvalidCredentials()

        try:
            if record.algorithm != self.hasher.algorithm.value:
                self.hasher.dummy_verify(secret)
                raise MalformedHashError(
                    f"Stored hash uses {record.algorithm!r}, deployment uses {self.hasher.algorithm.value!r}."
                )
            matched = self.hasher.verify(secret, record.password_hash)
        except MalformedHashError as exc:
            logger.error("Unusable credential record for principal %s: %s", record.principal_id, exc)
            raise InvalidCredentials() from None

        if not matched:
            logger.info("Login failed: wrong secret for principal %s", record.principal_id)
            raise InvalidCredentials()
        if not record.is_active:
            logger.info("Login refused: principal %s is inactive", record.principal_id)
            raise InvalidCredentials()

        pair = self._issue_pair(record.principal_id, moment)
        logger.info("Login succeeded for principal %s (token %s)", record.principal_id, pair.access_claims.token_id)
        return pair

    def _issue_pair(self, principal: str, moment: datetime) -> TokenPair:
        access = self.codec.issue(principal, moment)
        refresh = self.codec.issue_refresh(principal, moment, access.claims)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_claims=access.claims,
            refresh_claims=refresh.claims,
            expires_in=int(self.codec.access_lifetime.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Per-request authentication
    # ------------------------------------------------------------------

    def authenticate(self, token: str, now: Optional[datetime] = None) -> str:
        """Return the principal of a valid, unrevoked access token.

        Raises MalformedToken, ExpiredToken, Revoked, or (fail-closed only)
        StoreUnavailable.
        """
        return self.authenticate_claims(token, now).principal

    def authenticate_claims(self, token: str, now: Optional[datetime] = None) -> TokenClaims:
        """Like authenticate() but returns the full verified claims."""
        claims = self.codec.decode(token, _resolve_now(now), expected_type=TokenType.ACCESS)
        self._check_revocation(claims, policy=self.failure_policy)
        return claims

    def _check_revocation(self, claims: TokenClaims, *, policy: StoreFailurePolicy) -> None:
        try:
            revoked = self.revocations.is_revoked(claims.token_id, claims.principal, claims.issued_at)
        except StoreUnavailable:
            if policy is StoreFailurePolicy.FAIL_OPEN:
                logger.warning(
                    "Revocation store unavailable; accepting token %s for principal %s (fail-open)",
                    claims.token_id,
                    claims.principal,
                )
                return
            logger.error("Revocation store unavailable; rejecting token %s", claims.token_id)
            raise
        if revoked:
            raise Revoked()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, now: Optional[datetime] = None) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one [C4].

        Store failures always raise StoreUnavailable here, whatever the policy.
        """
        moment = _resolve_now(now)
        claims = self.codec.decode(refresh_token, moment, expected_type=TokenType.REFRESH)
        self._check_revocation(claims, policy=StoreFailurePolicy.FAIL_CLOSED)

        ts = to_timestamp(moment)
        if not self.revocations.consume(claims.token_id, claims.expires_at, ts):
            raise Revoked()
        self.revocations.revoke(claims.paired_token_id, claims.paired_expires_at, ts)

        pair = self._issue_pair(claims.principal, moment)
        logger.info(
            "Refreshed session for principal %s (token %s -> %s)",
            claims.principal,
            claims.token_id,
            pair.refresh_claims.token_id,
        )
        return pair

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def logout(self, token: str, now: Optional[datetime] = None) -> None:
        """Revoke the presented token; a refresh token also revokes its paired access token.

        Accepts expired tokens. Idempotent. Raises MalformedToken for a token
        that fails verification and StoreUnavailable if the write did not land.
        """
        claims = self.codec.decode_allow_expired(token)
        ts = to_timestamp(_resolve_now(now))
        self.revocations.revoke(claims.token_id, claims.expires_at, ts)
        if claims.token_type is TokenType.REFRESH:
            self.revocations.revoke(claims.paired_token_id, claims.paired_expires_at, ts)
        logger.info("Logout for principal %s (token %s)", claims.principal, claims.token_id)

    def revoke_all(self, principal: str, now: Optional[datetime] = None) -> None:
        """Invalidate every token of ``principal`` issued strictly before ``now``."""
        if not principal:
            raise ValueError("principal must be non-empty")
        self.revocations.revoke_principal(principal, to_timestamp(_resolve_now(now)))

    def revoke_global(self, now: Optional[datetime] = None) -> None:
        """Invalidate every token issued strictly before ``now``, for all principals."""
        self.revocations.revoke_global(to_timestamp(_resolve_now(now)))
