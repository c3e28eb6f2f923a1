"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and TokenStore are the repositories; _row_to_user / _row_to_token
are the mappers. Flow and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is a UNIQUE constraint, not a read-then-write check.
  create_user() raises IntegrityError when two signups race on one address;
  the signup flow maps that to 409.

  Single-use tokens are consumed with one conditional UPDATE. Two concurrent
  consumers of the same token value cannot both see rowcount == 1, so at most
  one of them wins.

DB path: auth/atrium_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import PersistentToken, TokenKind, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'atrium_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="user"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("image", Text),
    Column("oauth_provider", String(30)),  # "github", "google"
    Column("oauth_subject", Text),  # provider's stable user ID
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),  # ISO 8601 timestamp of last successful auth
)

_tokens = Table(
    "auth_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token", String(255), nullable=False, unique=True),
    Column("kind", String(32), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("consumed_at", DateTime(timezone=True)),
    Column("revoked_at", DateTime(timezone=True)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _create_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands DateTime columns back naive; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="ana@example.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("ana@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _create_engine(db_url or _DEFAULT_DB_URL)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers should catch IntegrityError as a signal that a concurrent
        request already created the record [M1].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    email_verified=1 if user.email_verified else 0,
                    image=user.image,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (oauth_provider, oauth_subject) pair.

        Returns None if no linked record exists. Returning OAuth users are
        found through this method once their identity has been linked.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: int, provider: str, subject: str, clear_password: bool = False) -> None:
        """Associate an OAuth identity with an existing user record.

        The provider has verified the email, so the account is marked verified
        at the same time. With clear_password=True the stored hash is dropped
        in the same UPDATE, leaving an OAuth-only account.
        """
        values: dict = {"oauth_provider": provider, "oauth_subject": subject, "email_verified": 1}
        if clear_password:
            values["hashed_password"] = None
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()

    def mark_email_verified(self, user_id: int) -> bool:
        """Set the email-verified flag. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(email_verified=1))
            conn.commit()
        return result.rowcount > 0

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace the stored password hash. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user.

        Called on every successful authentication (password login and OAuth).
        """
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Single-use tokens
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for email verification and password reset tokens.

    A token row is never reused: consumption stamps consumed_at, revocation
    stamps revoked_at, and purge_expired() deletes rows that can no longer be
    used by anyone.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _create_engine(db_url or _DEFAULT_DB_URL)

    def _create(self, kind: TokenKind, user_id: int, token: str, expires_at: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    user_id=user_id,
                    token=token,
                    kind=kind.value,
                    expires_at=expires_at,
                    created_at=_now(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_email_verification_token(self, user_id: int, token: str, expires_at: datetime) -> int:
        return self._create(TokenKind.email_verification, user_id, token, expires_at)

    def create_password_reset_token(self, user_id: int, token: str, expires_at: datetime) -> int:
        return self._create(TokenKind.password_reset, user_id, token, expires_at)

    def _active(self, kind: TokenKind, now: datetime):
        return (
            (_tokens.c.kind == kind.value)
            & _tokens.c.consumed_at.is_(None)
            & _tokens.c.revoked_at.is_(None)
            & (_tokens.c.expires_at > now)
        )

    def find_valid_password_reset_token(self, token: str) -> PersistentToken | None:
        """Return the reset token if it is neither expired, consumed nor revoked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where((_tokens.c.token == token) & self._active(TokenKind.password_reset, _now()))
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def revoke_all_password_reset_tokens_by_user(self, user_id: int) -> int:
        """Revoke every still-usable reset token of a user. Returns the number revoked."""
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.user_id == user_id)
                    & (_tokens.c.kind == TokenKind.password_reset.value)
                    & _tokens.c.consumed_at.is_(None)
                    & _tokens.c.revoked_at.is_(None)
                )
                .values(revoked_at=now)
            )
            conn.commit()
        return result.rowcount

    def _consume(self, kind: TokenKind, token: str) -> PersistentToken | None:
        """Atomically mark an active token consumed and return it.

        The WHERE clause repeats every validity condition, so the UPDATE itself
        is the check. rowcount != 1 means the token was unknown, expired,
        revoked, or already consumed by someone else.
        """
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.token == token) & self._active(kind, now))
                .values(consumed_at=now)
            )
            if result.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(_tokens.select().where(_tokens.c.token == token)).fetchone()
            conn.commit()
        return _row_to_token(row) if row is not None else None

    def consume_email_verification_token(self, token: str) -> PersistentToken | None:
        return self._consume(TokenKind.email_verification, token)

    def consume_password_reset_token(self, token: str) -> PersistentToken | None:
        return self._consume(TokenKind.password_reset, token)

    def purge_expired(self) -> int:
        """Delete tokens that expired, were consumed, or were revoked. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.delete().where(
                    (_tokens.c.expires_at <= _now())
                    | _tokens.c.consumed_at.is_not(None)
                    | _tokens.c.revoked_at.is_not(None)
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        email_verified=bool(row.email_verified),
        image=row.image,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_token(row) -> PersistentToken:
    return PersistentToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        kind=TokenKind(row.kind),
        expires_at=_as_utc(row.expires_at),
        created_at=_as_utc(row.created_at),
        consumed_at=_as_utc(row.consumed_at),
        revoked_at=_as_utc(row.revoked_at),
    )
