"""
auth/passwords.py -- Credential verification against salted password hashes.

Security design decisions:
  Algorithms: a closed HashAlgorithm enum, chosen once per deployment from
       Settings.password_hash_algorithm. bcrypt is used directly (no passlib
       wrapper); argon2id goes through argon2-cffi. Both embed their salt and
       work factor in the stored string, so verification needs no extra state.

  Verification: always the library's own check (bcrypt.checkpw /
       argon2 PasswordHasher.verify). Never a raw equality test on hashes or
       plaintext.

  Tag checking: a stored hash whose prefix does not belong to the configured
       algorithm is a data/configuration error, not a wrong password. It raises
       MalformedHashError so operators can find the bad row, while the session
       layer still answers the end user with InvalidCredentials.

  Timing equalization [C1]: each PasswordHasher computes a dummy hash at
       construction with the same algorithm and work factor. dummy_verify()
       checks the presented secret against it so an unknown identifier costs
       the same as a wrong password. verify() itself spends one full check on
       the dummy hash before any early rejection (unacceptable secret, wrong
       tag, corrupt hash), so no failure answers faster than a mismatch.

  Length bounds: bcrypt only looks at the first 72 bytes and bcrypt>=4.1
       rejects longer inputs, so secrets above the per-algorithm bound are
       refused before touching the stored hash (verify -> False, hash -> ValueError).

Nothing in this module logs plaintext secrets.
"""

from __future__ import annotations

import secrets
from enum import Enum

import bcrypt
from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from auth.errors import ConfigurationError, MalformedHashError

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_ARGON2ID_PREFIX = "$argon2id$"

# Stand-in secret for the equalizing check; any acceptable value works.
_FILLER_SECRET = "x"


class HashAlgorithm(str, Enum):
    BCRYPT = "bcrypt"
    ARGON2ID = "argon2id"

    @property
    def max_secret_bytes(self) -> int:
        return 72 if self is HashAlgorithm.BCRYPT else 4096

    def owns(self, stored_hash: str) -> bool:
        """Return True if ``stored_hash`` carries this algorithm's tag."""
        if self is HashAlgorithm.BCRYPT:
            return stored_hash.startswith(_BCRYPT_PREFIXES)
        return stored_hash.startswith(_ARGON2ID_PREFIX)


class PasswordHasher:
    """Hash and verify secrets with one configured algorithm.

    Immutable after construction and safe to share across threads.
    """

    def __init__(
        self,
        algorithm: HashAlgorithm = HashAlgorithm.BCRYPT,
        *,
        bcrypt_rounds: int = 12,
        argon2_time_cost: int = 3,
        argon2_memory_cost: int = 65536,
        argon2_parallelism: int = 4,
    ) -> None:
        self.algorithm = HashAlgorithm(algorithm)
        if not 4 <= bcrypt_rounds <= 31:
            raise ConfigurationError(f"bcrypt_rounds must be between 4 and 31, got {bcrypt_rounds}")
        self._bcrypt_rounds = bcrypt_rounds
        self._argon2 = _Argon2Hasher(
            time_cost=argon2_time_cost,
            memory_cost=argon2_memory_cost,
            parallelism=argon2_parallelism,
            type=Type.ID,
        )
        # Computed once so the first failed login is not measurably slower.
        self._dummy_hash = self.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            HashAlgorithm(settings.password_hash_algorithm),
            bcrypt_rounds=settings.bcrypt_rounds,
            argon2_time_cost=settings.argon2_time_cost,
            argon2_memory_cost=settings.argon2_memory_cost,
            argon2_parallelism=settings.argon2_parallelism,
        )

    def _acceptable(self, secret: str) -> bool:
        if not secret:
            return False
        return len(secret.encode("utf-8")) <= self.algorithm.max_secret_bytes

    def hash(self, secret: str) -> str:
        """Return a salted hash of ``secret`` in the algorithm's standard string format."""
        if not self._acceptable(secret):
            raise ValueError(
                f"Secret must be non-empty and at most {self.algorithm.max_secret_bytes} bytes."
            )
        if self.algorithm is HashAlgorithm.BCRYPT:
            salt = bcrypt.gensalt(rounds=self._bcrypt_rounds)
            return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")
        return self._argon2.hash(secret)

    def _check(self, secret: str, stored_hash: str) -> bool:
        """Run the library's verification once. Raises MalformedHashError for an unparseable hash."""
        if self.algorithm is HashAlgorithm.BCRYPT:
            try:
                return bcrypt.checkpw(secret.encode("utf-8"), stored_hash.encode("utf-8"))
            except ValueError:
                # Callers length-check the secret first, so this is the hash (bad salt/format).
                raise MalformedHashError("Stored bcrypt hash could not be parsed.") from None
        try:
            return self._argon2.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            # VerificationError without a mismatch means libargon2 failed to decode the hash.
            raise MalformedHashError("Stored argon2id hash could not be parsed.") from None

    def _spend_one_check(self) -> None:
        self._check(_FILLER_SECRET, self._dummy_hash)

    def verify(self, secret: str, stored_hash: str) -> bool:
        """Return True if ``secret`` matches ``stored_hash``.

        Raises MalformedHashError when ``stored_hash`` is not a parseable hash
        of the configured algorithm. Empty or over-long secrets never match.
        Every outcome, including these early rejections, costs exactly one
        full verification at the configured work factor.
        """
        if not stored_hash or not self.algorithm.owns(stored_hash):
            self._spend_one_check()
            raise MalformedHashError(f"Stored hash is not a valid {self.algorithm.value} hash.")
        if not self._acceptable(secret):
            self._spend_one_check()
            return False
        try:
            return self._check(secret, stored_hash)
        except MalformedHashError:
            # The library bails out before key stretching on a corrupt hash.
            self._spend_one_check()
            raise

    def dummy_verify(self, secret: str) -> None:
        """Spend one verification's worth of work on ``secret`` and discard the result."""
        self.verify(secret, self._dummy_hash)
