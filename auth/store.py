"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_refresh / _row_to_email_token are the mappers. The
engine and token store never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Token rows hold salted digests only, so there is no lookup-by-secret
  query. Callers list the outstanding rows of a scope and verify each one.

Concurrency:
  Every state flip is a conditional UPDATE (... WHERE revoked = 0 /
  WHERE used = 0) and the caller learns from rowcount whether it won. Two
  requests racing on the same refresh token both find the row, but only
  one UPDATE matches; the other gets False and must report failure.

  replace_refresh_token() and consume_email_token() run their conditional
  flip and the dependent write in one transaction, so a crash between the
  two steps leaves neither visible.

Errors:
  Unique-email violations surface as DuplicateEmail. Every other SQLAlchemy
  error is re-raised as PersistenceError with the original chained. Nothing
  is retried here.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision, which keeps lexicographic order equal to chronological order
for the purge query.

DB path: credgate.db at the repo root unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateEmail, PersistenceError
from auth.models import EmailToken, EmailTokenKind, RefreshToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credgate.db'}"

# Fields consume_email_token() may write on the owning user.
_CONSUMABLE_USER_FIELDS = {"password_hash", "email_verified"}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("name", String(100)),
    Column("password_hash", Text, nullable=False),
    Column("roles", Text, nullable=False),  # JSON list
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("token_hash", Text, nullable=False),  # bcrypt(sha256(raw))
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("replaced_by", String(32)),  # set by rotation, NULL for logout
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_user_revoked", "user_id", "revoked"),
)

_email_tokens = Table(
    "email_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("kind", String(10), nullable=False),  # "verify" | "reset"
    Column("token_hash", Text, nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_email_tokens_kind_used", "kind", "used"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind the writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise PersistenceError(detail=type(exc).__name__) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, RefreshToken and EmailToken rows.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user_id = store.create_user(User(email="ann@x.com", password_hash=digest))
        user = store.get_user_by_email("ann@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _storage_errors():
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises DuplicateEmail if the email is already taken, including when a
        concurrent registration won the race after the caller's own check.
        """
        user_id = _new_id()
        with _storage_errors():
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _users.insert().values(
                            id=user_id,
                            email=user.email,
                            name=user.name,
                            password_hash=user.password_hash,
                            roles=json.dumps(sorted(set(user.roles))),
                            email_verified=1 if user.email_verified else 0,
                            created_at=_now_iso(),
                        )
                    )
            except IntegrityError as exc:
                raise DuplicateEmail() from exc
        return user_id

    def get_user_by_id(self, user_id: str) -> User | None:
        with _storage_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Callers normalize before calling."""
        with _storage_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_roles(self, user_id: str, roles: list[str]) -> bool:
        """Replace a user's roles. Returns False if the user does not exist.

        Takes effect on the user's next rotation; outstanding access tokens
        keep the roles they were minted with until they expire.
        """
        with _storage_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(roles=json.dumps(sorted(set(roles))))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> str:
        token_id = _new_id()
        with _storage_errors(), self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_values(token, token_id)))
        return token_id

    def list_active_refresh_tokens(self, user_id: str) -> list[RefreshToken]:
        """Return the user's un-revoked refresh rows, expired ones included.

        Expiry is checked by the caller after a digest matches, so an expired
        match is distinguishable from no match at all.
        """
        with _storage_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return [_row_to_refresh(r) for r in rows]

    def list_rotated_refresh_tokens(self, user_id: str, now: datetime) -> list[RefreshToken]:
        """Return unexpired rows of the user that were consumed by a rotation."""
        with _storage_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 1)
                    & (_refresh_tokens.c.replaced_by.is_not(None))
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
            ).fetchall()
        return [_row_to_refresh(r) for r in rows]

    def revoke_refresh_token(self, token_id: str) -> bool:
        """Flip one row from active to revoked. True only for the caller that flipped it."""
        with _storage_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount == 1

    def replace_refresh_token(self, old_id: str, new_token: RefreshToken) -> str | None:
        """Revoke old_id and insert new_token atomically.

        Returns the new row id, or None if old_id was no longer active (a
        concurrent rotation or logout got there first). On None nothing was
        written.
        """
        new_id = _new_id()
        with _storage_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, replaced_by=new_id)
            )
            if result.rowcount != 1:
                return None
            conn.execute(_refresh_tokens.insert().values(**_refresh_values(new_token, new_id)))
        return new_id

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        """Revoke every active refresh row of a user. Returns the number revoked."""
        with _storage_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Email tokens
    # ------------------------------------------------------------------

    def create_email_token(self, token: EmailToken) -> str:
        token_id = _new_id()
        with _storage_errors(), self.engine.begin() as conn:
            conn.execute(
                _email_tokens.insert().values(
                    id=token_id,
                    user_id=token.user_id,
                    kind=EmailTokenKind(token.kind).value,
                    token_hash=token.token_hash,
                    used=0,
                    expires_at=_iso(token.expires_at),
                    created_at=_now_iso(),
                )
            )
        return token_id

    def list_unused_email_tokens(self, kind: EmailTokenKind) -> list[EmailToken]:
        """Return every unused token of the given kind across all users, oldest first."""
        with _storage_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _email_tokens.select()
                .where((_email_tokens.c.kind == EmailTokenKind(kind).value) & (_email_tokens.c.used == 0))
                .order_by(_email_tokens.c.created_at)
            ).fetchall()
        return [_row_to_email_token(r) for r in rows]

    def consume_email_token(self, token_id: str, user_id: str, **user_fields) -> bool:
        """Mark a token used and apply user_fields to its owner in one transaction.

        Accepted fields: password_hash, email_verified. Returns False (and
        writes nothing) if the token was already used.
        """
        unknown = set(user_fields) - _CONSUMABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email_verified" in user_fields:
            user_fields["email_verified"] = 1 if user_fields["email_verified"] else 0
        with _storage_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _email_tokens.update()
                .where((_email_tokens.c.id == token_id) & (_email_tokens.c.used == 0))
                .values(used=1)
            )
            if result.rowcount != 1:
                return False
            if user_fields:
                conn.execute(_users.update().where(_users.c.id == user_id).values(**user_fields))
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired refresh and email token rows. Returns number of rows removed."""
        cutoff = _iso(now or datetime.now(timezone.utc))
        with _storage_errors(), self.engine.begin() as conn:
            removed = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff)).rowcount
            removed += conn.execute(_email_tokens.delete().where(_email_tokens.c.expires_at < cutoff)).rowcount
        return removed

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_values(token: RefreshToken, token_id: str) -> dict:
    return {
        "id": token_id,
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "revoked": 0,
        "replaced_by": None,
        "expires_at": _iso(token.expires_at),
        "created_at": _now_iso(),
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        roles=json.loads(row.roles),
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
    )


def _row_to_refresh(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        revoked=bool(row.revoked),
        replaced_by=row.replaced_by,
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
    )


def _row_to_email_token(row) -> EmailToken:
    return EmailToken(
        id=row.id,
        user_id=row.user_id,
        kind=EmailTokenKind(row.kind),
        token_hash=row.token_hash,
        used=bool(row.used),
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
    )
