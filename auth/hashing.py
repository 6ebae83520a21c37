"""
auth/hashing.py -- One-way hashing for passwords and opaque token secrets.

Security design decisions:
  bcrypt directly (no passlib wrapper). passlib's wrap-bug probe feeds bcrypt
  a >72 byte password, which bcrypt 4.x+ rejects outright.

  Passwords are hashed as given. auth.validation caps them at 72 UTF-8 bytes
  so bcrypt never truncates silently.

  Token secrets are reduced with SHA-256 first. Refresh secrets are signed
  envelopes well past 72 bytes, and their leading bytes (the JWT header) are
  identical for every token -- hashing the raw value would make every
  refresh token verify against every digest. The hex digest is 64 bytes, so
  the full 256 bits reach bcrypt.

  Token digests are salted, so the store cannot look them up by equality.
  Consumers scan the outstanding rows and verify each one (auth/opaque.py).

No state is retained between calls beyond the configured cost and a dummy
digest used for timing equalization.
"""

from __future__ import annotations

import hashlib

import bcrypt


def _prehash(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("ascii")


class SecretHasher:
    """bcrypt hasher with a configurable work factor.

    Usage:
        hasher = SecretHasher(rounds=settings.bcrypt_rounds)
        digest = hasher.hash_password("Secret123")
        hasher.verify_password("Secret123", digest)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones.
        self._dummy_hash = self.hash_password("credgate_timing_dummy")

    def _hash(self, data: bytes) -> str:
        return bcrypt.hashpw(data, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    @staticmethod
    def _check(data: bytes, digest: str) -> bool:
        try:
            return bcrypt.checkpw(data, digest.encode("utf-8"))
        except ValueError:
            # Malformed digest or over-long input: treat as a mismatch.
            return False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        """Return a bcrypt digest of the plaintext password."""
        return self._hash(password.encode("utf-8"))

    def verify_password(self, password: str, digest: str) -> bool:
        """Return True if the plaintext password matches the digest."""
        return self._check(password.encode("utf-8"), digest)

    def burn(self, password: str) -> None:
        """Run one comparison against the dummy digest and discard the result.

        Called when there is no real digest to compare against (unknown
        email) so the response takes as long as a wrong password would.
        """
        self._check(password.encode("utf-8"), self._dummy_hash)

    # ------------------------------------------------------------------
    # Opaque token secrets
    # ------------------------------------------------------------------

    def hash_secret(self, secret: str) -> str:
        return self._hash(_prehash(secret))

    def verify_secret(self, secret: str, digest: str) -> bool:
        return self._check(_prehash(secret), digest)
