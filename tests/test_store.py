"""
tests/test_store.py -- Unit tests for auth/store.py.

Covers:
  - user create / lookup / duplicate email / role replacement
  - conditional refresh-token flips: only the first caller wins
  - replace_refresh_token writes nothing when it loses
  - consume_email_token is single-use and updates the owner atomically
  - purge_expired removes only expired token rows
  - SQLAlchemy failures surface as PersistenceError
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import DuplicateEmail, PersistenceError
from auth.models import EmailToken, EmailTokenKind, RefreshToken, User
from auth.store import CredentialStore


def _future(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**(delta or {"days": 1}))


def _past(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**(delta or {"days": 1}))


@pytest.fixture
def user_id(store: CredentialStore) -> str:
    return store.create_user(User(email="ann@x.com", password_hash="digest", name="Ann"))


class TestUsers:
    def test_create_and_lookup(self, store: CredentialStore, user_id: str) -> None:
        by_email = store.get_user_by_email("ann@x.com")
        by_id = store.get_user_by_id(user_id)
        assert by_email == by_id
        assert by_id.name == "Ann"
        assert by_id.roles == ["USER"]
        assert by_id.email_verified is False
        assert by_id.created_at

    def test_missing_user(self, store: CredentialStore) -> None:
        assert store.get_user_by_id("nope") is None
        assert store.get_user_by_email("nobody@x.com") is None

    def test_duplicate_email(self, store: CredentialStore, user_id: str) -> None:
        with pytest.raises(DuplicateEmail):
            store.create_user(User(email="ann@x.com", password_hash="other"))

    def test_set_roles(self, store: CredentialStore, user_id: str) -> None:
        assert store.set_roles(user_id, ["USER", "ADMIN", "USER"])
        assert store.get_user_by_id(user_id).roles == ["ADMIN", "USER"]
        assert not store.set_roles("nope", ["ADMIN"])


class TestRefreshTokens:
    def test_list_active_excludes_revoked(self, store: CredentialStore, user_id: str) -> None:
        keep = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="h1", expires_at=_future()))
        gone = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="h2", expires_at=_future()))
        assert store.revoke_refresh_token(gone)
        assert [t.id for t in store.list_active_refresh_tokens(user_id)] == [keep]

    def test_revoke_only_once(self, store: CredentialStore, user_id: str) -> None:
        token_id = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="h", expires_at=_future()))
        assert store.revoke_refresh_token(token_id) is True
        assert store.revoke_refresh_token(token_id) is False

    def test_replace_is_conditional(self, store: CredentialStore, user_id: str) -> None:
        old = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="old", expires_at=_future()))
        first = store.replace_refresh_token(old, RefreshToken(user_id=user_id, token_hash="new1", expires_at=_future()))
        second = store.replace_refresh_token(old, RefreshToken(user_id=user_id, token_hash="new2", expires_at=_future()))
        assert first is not None
        assert second is None
        active = store.list_active_refresh_tokens(user_id)
        assert [t.token_hash for t in active] == ["new1"]

    def test_replace_marks_rotated(self, store: CredentialStore, user_id: str) -> None:
        old = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="old", expires_at=_future()))
        new_id = store.replace_refresh_token(old, RefreshToken(user_id=user_id, token_hash="new", expires_at=_future()))
        rotated = store.list_rotated_refresh_tokens(user_id, datetime.now(timezone.utc))
        assert [(t.id, t.replaced_by) for t in rotated] == [(old, new_id)]

    def test_logout_revocation_is_not_rotation(self, store: CredentialStore, user_id: str) -> None:
        token_id = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="h", expires_at=_future()))
        store.revoke_refresh_token(token_id)
        assert store.list_rotated_refresh_tokens(user_id, datetime.now(timezone.utc)) == []

    def test_revoke_all(self, store: CredentialStore, user_id: str) -> None:
        other = store.create_user(User(email="bob@x.com", password_hash="digest"))
        for owner in (user_id, user_id, other):
            store.create_refresh_token(RefreshToken(user_id=owner, token_hash="h", expires_at=_future()))
        assert store.revoke_all_refresh_tokens(user_id) == 2
        assert store.list_active_refresh_tokens(user_id) == []
        assert len(store.list_active_refresh_tokens(other)) == 1


class TestEmailTokens:
    def _token(self, store: CredentialStore, user_id: str, kind=EmailTokenKind.VERIFY, expires_at=None) -> str:
        return store.create_email_token(
            EmailToken(user_id=user_id, kind=kind, token_hash="h", expires_at=expires_at or _future())
        )

    def test_list_by_kind(self, store: CredentialStore, user_id: str) -> None:
        verify = self._token(store, user_id)
        self._token(store, user_id, kind=EmailTokenKind.RESET)
        listed = store.list_unused_email_tokens(EmailTokenKind.VERIFY)
        assert [t.id for t in listed] == [verify]
        assert listed[0].kind is EmailTokenKind.VERIFY

    def test_consume_once_and_update_owner(self, store: CredentialStore, user_id: str) -> None:
        token_id = self._token(store, user_id)
        assert store.consume_email_token(token_id, user_id, email_verified=True) is True
        assert store.get_user_by_id(user_id).email_verified is True
        assert store.consume_email_token(token_id, user_id, email_verified=True) is False
        assert store.list_unused_email_tokens(EmailTokenKind.VERIFY) == []

    def test_losing_consumer_writes_nothing(self, store: CredentialStore, user_id: str) -> None:
        token_id = self._token(store, user_id, kind=EmailTokenKind.RESET)
        assert store.consume_email_token(token_id, user_id, password_hash="first")
        assert not store.consume_email_token(token_id, user_id, password_hash="second")
        assert store.get_user_by_id(user_id).password_hash == "first"

    def test_unknown_user_field_rejected(self, store: CredentialStore, user_id: str) -> None:
        token_id = self._token(store, user_id)
        with pytest.raises(ValueError):
            store.consume_email_token(token_id, user_id, roles="ADMIN")


class TestMaintenance:
    def test_purge_expired(self, store: CredentialStore, user_id: str) -> None:
        store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="old", expires_at=_past()))
        live = store.create_refresh_token(RefreshToken(user_id=user_id, token_hash="live", expires_at=_future()))
        store.create_email_token(
            EmailToken(user_id=user_id, kind=EmailTokenKind.RESET, token_hash="h", expires_at=_past(hours=2))
        )
        assert store.purge_expired() == 2
        assert [t.id for t in store.list_active_refresh_tokens(user_id)] == [live]
        assert store.list_unused_email_tokens(EmailTokenKind.RESET) == []

    def test_ping(self, store: CredentialStore) -> None:
        assert store.ping() is True

    def test_storage_failure_is_persistence_error(self, store: CredentialStore) -> None:
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))
        with pytest.raises(PersistenceError) as excinfo:
            store.get_user_by_email("ann@x.com")
        assert isinstance(excinfo.value.__cause__, SQLAlchemyError)
