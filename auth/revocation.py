"""
auth/revocation.py -- Early invalidation of session tokens.

Three kinds of entries live in the key-value cache:

  jwt.revoked.token:<jti>             one token, written by logout/refresh
  jwt.revoke.user.before:<principal>  every token of a principal issued before T
  jwt.revoke.global.before            every token issued before T

Every write carries a TTL. A token entry lives until the token would have
expired anyway (plus the validation leeway); a not-before marker lives for the
longest token lifetime, after which no token it could affect is still
accepted. The cache therefore never holds more than one lifetime's worth of
revocations.

Writes are idempotent: revoking the same jti twice just refreshes its TTL, so a
logout retried after a timeout is safe. Reads have no side effects. Marker
writes are last-writer-wins.

Cache outages surface as StoreUnavailable. This module never reports "not
revoked" for a lookup it could not perform.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional

from auth.errors import StoreUnavailable
from cache.store import CacheUnavailableError, KeyValueStore

logger = logging.getLogger("watchlist.auth")

REVOKED_TOKEN_PREFIX = "jwt.revoked.token:"
REVOKE_USER_BEFORE_PREFIX = "jwt.revoke.user.before:"
REVOKE_GLOBAL_BEFORE_KEY = "jwt.revoke.global.before"


def _marker_value(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        # A marker that cannot be parsed still means someone asked for revocation.
        logger.error("Unparseable revocation marker %r; treating as revoke-everything", raw)
        return math.inf


class RevocationStore:
    """Revocation entries on top of a KeyValueStore."""

    def __init__(self, cache: KeyValueStore, *, max_lifetime: timedelta, leeway: timedelta) -> None:
        if max_lifetime <= timedelta(0):
            raise ValueError("max_lifetime must be positive")
        self._cache = cache
        self._max_lifetime = max_lifetime.total_seconds()
        self._leeway = leeway.total_seconds()

    @property
    def marker_ttl(self) -> int:
        """TTL for not-before markers: max token lifetime plus leeway."""
        return math.ceil(self._max_lifetime + self._leeway)

    @staticmethod
    def _token_key(token_id: str) -> str:
        return f"{REVOKED_TOKEN_PREFIX}{token_id}"

    @staticmethod
    def _principal_key(principal: str) -> str:
        return f"{REVOKE_USER_BEFORE_PREFIX}{principal}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def revoke(self, token_id: str, expiry: float, now: float) -> bool:
        """Record ``token_id`` as revoked until ``expiry`` (epoch seconds).

        Returns False when the token can no longer be accepted anyway
        (past expiry plus leeway) and nothing was written.
        """
        ttl = math.ceil(expiry + self._leeway - now)
        if ttl <= 0:
            return False
        # A token can never be live longer than the max lifetime.
        ttl = min(ttl, self.marker_ttl)
        try:
            self._cache.set_with_ttl(self._token_key(token_id), repr(float(expiry)), ttl)
        except CacheUnavailableError as exc:
            raise StoreUnavailable() from exc
        logger.debug("Revoked token %s (ttl=%ds)", token_id, ttl)
        return True

    def consume(self, token_id: str, expiry: float, now: float) -> bool:
        """Revoke ``token_id`` only if it is not revoked yet.

        Returns True for exactly one caller per token id, which makes refresh
        tokens single-use even when two refreshes race.
        """
        ttl = math.ceil(expiry + self._leeway - now)
        if ttl <= 0:
            return False
        ttl = min(ttl, self.marker_ttl)
        try:
            first = self._cache.set_if_absent(self._token_key(token_id), repr(float(expiry)), ttl)
        except CacheUnavailableError as exc:
            raise StoreUnavailable() from exc
        if not first:
            logger.warning("Token %s presented again after it was consumed", token_id)
        return first

    def revoke_principal(self, principal: str, not_before: float) -> None:
        """Invalidate every token of ``principal`` issued before ``not_before``."""
        try:
            self._cache.set_with_ttl(self._principal_key(principal), repr(float(not_before)), self.marker_ttl)
        except CacheUnavailableError as exc:
            raise StoreUnavailable() from exc
        logger.info("Revoked all sessions of principal %s issued before %.3f", principal, not_before)

    def revoke_global(self, not_before: float) -> None:
        """Invalidate every token issued before ``not_before``, for all principals."""
        try:
            self._cache.set_with_ttl(REVOKE_GLOBAL_BEFORE_KEY, repr(float(not_before)), self.marker_ttl)
        except CacheUnavailableError as exc:
            raise StoreUnavailable() from exc
        logger.warning("Global revocation: all tokens issued before %.3f are invalid", not_before)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_revoked(self, token_id: str, principal: str, issued_at: float) -> bool:
        """True if the token itself, its principal, or everyone was revoked after it was issued."""
        keys = [REVOKE_GLOBAL_BEFORE_KEY, self._principal_key(principal), self._token_key(token_id)]
        try:
            global_raw, principal_raw, token_raw = self._cache.get_many(keys)
        except CacheUnavailableError as exc:
            raise StoreUnavailable() from exc

        global_before = _marker_value(global_raw)
        if global_before is not None and global_before > issued_at:
            logger.info("Token %s rejected: globally revoked", token_id)
            return True
        principal_before = _marker_value(principal_raw)
        if principal_before is not None and principal_before > issued_at:
            logger.info("Token %s rejected: principal %s revoked", token_id, principal)
            return True
        if token_raw is not None:
            logger.info("Token %s rejected: token revoked", token_id)
            return True
        return False
