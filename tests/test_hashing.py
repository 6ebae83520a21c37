"""
tests/test_hashing.py -- Unit tests for auth/hashing.py.

Covers:
  - password round-trip and single-bit alteration
  - salted digests (same input, different digest)
  - long token secrets with a shared prefix do not cross-verify
  - malformed digests fail closed
"""

from __future__ import annotations

import pytest

from auth.hashing import SecretHasher


@pytest.fixture(scope="module")
def hasher() -> SecretHasher:
    return SecretHasher(rounds=4)


class TestPasswords:
    @pytest.mark.parametrize("password", ["Secret123", "correct horse battery staple", "Pässwörd9", "A1" * 30])
    def test_round_trip(self, hasher: SecretHasher, password: str) -> None:
        assert hasher.verify_password(password, hasher.hash_password(password))

    @pytest.mark.parametrize("position", [0, 4, 8])
    def test_single_bit_flip_rejected(self, hasher: SecretHasher, position: int) -> None:
        password = "Secret123"
        digest = hasher.hash_password(password)
        altered = password[:position] + chr(ord(password[position]) ^ 1) + password[position + 1 :]
        assert not hasher.verify_password(altered, digest)

    def test_digests_are_salted(self, hasher: SecretHasher) -> None:
        assert hasher.hash_password("Secret123") != hasher.hash_password("Secret123")

    def test_cost_factor_embedded(self, hasher: SecretHasher) -> None:
        assert hasher.hash_password("Secret123").split("$")[2] == "04"

    def test_malformed_digest_is_mismatch(self, hasher: SecretHasher) -> None:
        assert hasher.verify_password("Secret123", "not-a-bcrypt-digest") is False

    def test_burn_does_not_raise(self, hasher: SecretHasher) -> None:
        hasher.burn("anything")
        hasher.burn("")


class TestSecrets:
    def test_round_trip(self, hasher: SecretHasher) -> None:
        secret = "ab" * 32
        assert hasher.verify_secret(secret, hasher.hash_secret(secret))

    def test_long_secrets_with_shared_prefix_differ(self, hasher: SecretHasher) -> None:
        """Secrets identical in their first 72 bytes must still be distinguished."""
        prefix = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9." + "x" * 60
        first = prefix + ".first-signature"
        second = prefix + ".second-signature"
        digest = hasher.hash_secret(first)
        assert hasher.verify_secret(first, digest)
        assert not hasher.verify_secret(second, digest)

    def test_secret_digest_is_not_a_password_digest(self, hasher: SecretHasher) -> None:
        secret = "Secret123"
        assert not hasher.verify_password(secret, hasher.hash_secret(secret))
