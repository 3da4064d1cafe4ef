"""
auth/store.py -- SQLAlchemy Core persistence layer for the user directory.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) is enforced by the schema. create_user() lets IntegrityError
  propagate so the caller (ResolveOrCreateUser) can detect a concurrent first
  login for the same email and re-read instead of creating a duplicate.

  Only the ciphertext of a stored credential ever reaches this table. There
  is no column that could hold a plaintext secret or a password.

Writers: the OIDC engine (resolve-or-create, profile refresh), the token
vault controller (salt/ciphertext), and the operator CLI. Nothing else.

Layer rule: no imports from api/, coordination/, or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="guest"),
    Column("salt", String(255)),  # hex; generated once per account
    Column("encrypted_secret", Text),  # "salt:iv:ciphertext" or NULL
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
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


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_user_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user = store.create_user(User(user_id=new_user_id(), email="a@example.com", display_name="A"))
        store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_encrypted_secret(self, user_id: str) -> str | None:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(_users.c.encrypted_secret).where(_users.c.user_id == user_id)
            ).scalar_one_or_none()
        return value or None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it as stored.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    user_id=user.user_id,
                    email=_normalize_email(user.email),
                    display_name=user.display_name or "",
                    role=user.role,
                    salt=user.salt,
                    encrypted_secret=user.encrypted_secret,
                    created_at=now,
                    updated_at=now,
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
        return User(
            user_id=user.user_id,
            email=_normalize_email(user.email),
            display_name=user.display_name or "",
            role=user.role,
            salt=user.salt,
            encrypted_secret=user.encrypted_secret,
            created_at=now,
            updated_at=now,
            is_active=user.is_active,
        )

    def update_profile(self, user_id: str, display_name: str, role: str) -> bool:
        """Refresh the display name and derived role from the latest login."""
        return self._update(user_id, display_name=display_name, role=role)

    def update_salt(self, user_id: str, salt: str) -> bool:
        return self._update(user_id, salt=salt)

    def save_encrypted_secret(self, user_id: str, encrypted_secret: str) -> bool:
        return self._update(user_id, encrypted_secret=encrypted_secret)

    def clear_encrypted_secret(self, user_id: str, clear_salt: bool = False) -> bool:
        """Drop the stored ciphertext, and the salt too when clear_salt is set.

        Returns True if a row was updated, False if user_id was not found.
        """
        fields: dict = {"encrypted_secret": None}
        if clear_salt:
            fields["salt"] = None
        return self._update(user_id, **fields)

    def _update(self, user_id: str, **fields) -> bool:
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.user_id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        display_name=row.display_name,
        role=row.role,
        salt=row.salt,
        encrypted_secret=row.encrypted_secret,
        created_at=row.created_at,
        updated_at=row.updated_at,
        is_active=bool(row.is_active),
    )
