"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Managers and routes never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Permission columns are decoded through parse_tag_set() inside the mappers,
  so every User and Project leaving this module carries a frozenset of tags
  regardless of what legacy rows hold.

Transactions:
  Multi-statement writes run inside engine.begin() so they commit or roll
  back as a unit:
    delete_user_cascade()         -- sessions, OAuth codes/tokens, then user
    reset_password()              -- new hash + delete every session
    delete_application_cascade()  -- tokens, codes, then the application
    redeem_authorization_code()   -- delete the code, insert the access token
  redeem_authorization_code() inserts the token only if its DELETE removed
  exactly one row. Two concurrent redemptions of the same code serialize on
  the delete; the loser sees rowcount 0 and nothing is written.

DB path: auth/keyhold.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    AuthorizationCode,
    OAuthAccessToken,
    OAuthApplication,
    Project,
    SessionToken,
    User,
)
from auth.permissions import dump_tag_set, parse_tag_set

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'keyhold.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),  # stored lower-cased
    Column("password_hash", Text, nullable=False),
    Column("email", String(254), unique=True),  # NULL until provided
    Column("display_name", String(50)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("permissions", Text, server_default="[]"),  # JSON array; legacy rows may hold NULL or bad JSON
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token", Text, nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Index("ix_tokens_user_id", "user_id"),
)

_projects = Table(
    "projects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("link", Text, nullable=False, server_default="/"),
    Column("permissions", Text, server_default="[]"),  # JSON array; legacy rows may hold NULL or bad JSON
    Column("created_at", String(32), nullable=False),
)

_applications = Table(
    "oauth_applications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("client_id", String(64), nullable=False, unique=True),
    Column("client_secret", String(128), nullable=False, unique=True),
    Column("redirect_uris", Text, nullable=False, server_default="[]"),  # JSON array
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON array
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_codes = Table(
    "oauth_authorization_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(128), nullable=False, unique=True),
    Column("client_id", String(64), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("scope", Text, nullable=False, server_default=""),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_access_tokens = Table(
    "oauth_access_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("access_token", String(128), nullable=False, unique=True),
    Column("client_id", String(64), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("scope", Text, nullable=False, server_default=""),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_oauth_access_tokens_user_client", "user_id", "client_id"),
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


def _dump_list(values: Iterable[str]) -> str:
    return json.dumps(list(values))


def _load_list(raw) -> list[str]:
    """Decode a JSON array column. Bad data decodes to an empty list."""
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(decoded, list):
        return []
    return [v for v in decoded if isinstance(v, str)]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, sessions, projects, and OAuth records.

    Usage:
        store = CredentialStore()
        uid = store.create_user(User(username="alice", password_hash=hash_password("secret")))
        user = store.get_user_by_username("Alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is
        already taken. Callers check first; the constraint catches races.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    password_hash=user.password_hash,
                    email=user.email,
                    display_name=user.display_name or user.username,
                    email_verified=1 if user.email_verified else 0,
                    permissions=dump_tag_set(user.permissions),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by username, ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: display_name, email, email_verified, permissions.
        permissions may be any iterable of tags; it is serialized here.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "permissions" in fields:
            fields["permissions"] = dump_tag_set(fields["permissions"])
        if "email_verified" in fields:
            fields["email_verified"] = 1 if fields["email_verified"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def reset_password(self, user_id: int, password_hash: str) -> int | None:
        """Replace a user's password hash and delete all of their sessions.

        Returns the number of sessions deleted, or None if the user does not
        exist (nothing is changed in that case).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(password_hash=password_hash)
            )
            if result.rowcount == 0:
                return None
            deleted = conn.execute(_tokens.delete().where(_tokens.c.user_id == user_id))
            return deleted.rowcount

    def delete_user_cascade(self, user_id: int) -> bool:
        """Delete a user together with their sessions and OAuth grants.

        Runs as one transaction. OAuth applications the user registered are
        left in place for an admin to reassign or delete.
        """
        with self.engine.begin() as conn:
            conn.execute(_tokens.delete().where(_tokens.c.user_id == user_id))
            conn.execute(_codes.delete().where(_codes.c.user_id == user_id))
            conn.execute(_access_tokens.delete().where(_access_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, token: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.insert().values(user_id=user_id, token=token, created_at=_now_iso()))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_session_by_token(self, token: str) -> SessionToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session(self, session_id: int) -> SessionToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int) -> list[SessionToken]:
        """Return a user's sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.user_id == user_id).order_by(_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, project: Project) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _projects.insert().values(
                    name=project.name,
                    description=project.description,
                    link=project.link,
                    permissions=dump_tag_set(project.permissions),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_project(self, project_id: int) -> Project | None:
        with self.engine.connect() as conn:
            row = conn.execute(_projects.select().where(_projects.c.id == project_id)).fetchone()
        return _row_to_project(row) if row is not None else None

    def get_project_by_name(self, name: str) -> Project | None:
        with self.engine.connect() as conn:
            row = conn.execute(_projects.select().where(_projects.c.name == name)).fetchone()
        return _row_to_project(row) if row is not None else None

    def list_projects(self) -> list[Project]:
        with self.engine.connect() as conn:
            rows = conn.execute(_projects.select().order_by(_projects.c.id)).fetchall()
        return [_row_to_project(r) for r in rows]

    def update_project(self, project_id: int, **fields) -> bool:
        """Accepted fields: name, description, link, permissions."""
        if "permissions" in fields:
            fields["permissions"] = dump_tag_set(fields["permissions"])
        with self.engine.connect() as conn:
            result = conn.execute(_projects.update().where(_projects.c.id == project_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_project(self, project_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_projects.delete().where(_projects.c.id == project_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OAuth applications
    # ------------------------------------------------------------------

    def create_application(self, app: OAuthApplication) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _applications.insert().values(
                    name=app.name,
                    description=app.description,
                    client_id=app.client_id,
                    client_secret=app.client_secret,
                    redirect_uris=_dump_list(app.redirect_uris),
                    scopes=_dump_list(app.scopes),
                    user_id=app.user_id,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_application(self, app_id: int) -> OAuthApplication | None:
        with self.engine.connect() as conn:
            row = conn.execute(_applications.select().where(_applications.c.id == app_id)).fetchone()
        return _row_to_application(row) if row is not None else None

    def get_application_by_client_id(self, client_id: str) -> OAuthApplication | None:
        with self.engine.connect() as conn:
            row = conn.execute(_applications.select().where(_applications.c.client_id == client_id)).fetchone()
        return _row_to_application(row) if row is not None else None

    def list_applications(self, user_id: int | None = None) -> list[OAuthApplication]:
        """Return applications, newest first. user_id=None returns every application."""
        query = _applications.select().order_by(_applications.c.id.desc())
        if user_id is not None:
            query = query.where(_applications.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_application(r) for r in rows]

    def update_application(self, app_id: int, **fields) -> bool:
        """Accepted fields: name, description, redirect_uris, scopes."""
        for key in ("redirect_uris", "scopes"):
            if key in fields:
                fields[key] = _dump_list(fields[key])
        with self.engine.connect() as conn:
            result = conn.execute(_applications.update().where(_applications.c.id == app_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_application_cascade(self, app_id: int) -> dict | None:
        """Delete an application with all of its codes and access tokens.

        One transaction: either everything goes or nothing does. Returns
        {"codes_deleted": n, "tokens_deleted": m}, or None if the application
        does not exist.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_applications.c.client_id).where(_applications.c.id == app_id)
            ).fetchone()
            if row is None:
                return None
            client_id = row.client_id
            tokens = conn.execute(_access_tokens.delete().where(_access_tokens.c.client_id == client_id))
            codes = conn.execute(_codes.delete().where(_codes.c.client_id == client_id))
            conn.execute(_applications.delete().where(_applications.c.id == app_id))
            return {"codes_deleted": codes.rowcount, "tokens_deleted": tokens.rowcount}

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_authorization_code(self, code: AuthorizationCode) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _codes.insert().values(
                    code=code.code,
                    client_id=code.client_id,
                    user_id=code.user_id,
                    redirect_uri=code.redirect_uri,
                    scope=code.scope,
                    expires_at=code.expires_at,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def get_authorization_code(self, code: str, client_id: str, redirect_uri: str) -> AuthorizationCode | None:
        """Look up a code by the exact (code, client_id, redirect_uri) triple."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select().where(
                    (_codes.c.code == code) & (_codes.c.client_id == client_id) & (_codes.c.redirect_uri == redirect_uri)
                )
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def delete_authorization_code(self, code: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.code == code))
            conn.commit()
        return result.rowcount > 0

    def redeem_authorization_code(self, code: AuthorizationCode, token: OAuthAccessToken) -> bool:
        """Consume a code and store the access token minted for it, atomically.

        Returns False (and writes nothing) if the code was already consumed.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _codes.delete().where(
                    (_codes.c.code == code.code)
                    & (_codes.c.client_id == code.client_id)
                    & (_codes.c.redirect_uri == code.redirect_uri)
                )
            )
            if consumed.rowcount != 1:
                return False
            conn.execute(
                _access_tokens.insert().values(
                    access_token=token.access_token,
                    client_id=token.client_id,
                    user_id=token.user_id,
                    scope=token.scope,
                    expires_at=token.expires_at,
                    created_at=_now_iso(),
                )
            )
            return True

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def get_access_token(self, access_token: str) -> OAuthAccessToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _access_tokens.select().where(_access_tokens.c.access_token == access_token)
            ).fetchone()
        return _row_to_access_token(row) if row is not None else None

    def delete_access_token(self, access_token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_access_tokens.delete().where(_access_tokens.c.access_token == access_token))
            conn.commit()
        return result.rowcount > 0

    def revoke_access_tokens(self, user_id: int, client_id: str) -> int:
        """Delete one user's tokens for one client. Other users' grants are untouched."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_tokens.delete().where(
                    (_access_tokens.c.user_id == user_id) & (_access_tokens.c.client_id == client_id)
                )
            )
            conn.commit()
        return result.rowcount

    def connected_applications(self, user_id: int, now_iso: str) -> list[tuple[OAuthApplication, int, str]]:
        """Return (application, live token count, latest expiry) for a user's grants."""
        active = func.count(_access_tokens.c.access_token).label("active_tokens")
        last_expires = func.max(_access_tokens.c.expires_at).label("last_expires")
        query = (
            select(_applications, active, last_expires)
            .select_from(
                _applications.join(_access_tokens, _applications.c.client_id == _access_tokens.c.client_id)
            )
            .where((_access_tokens.c.user_id == user_id) & (_access_tokens.c.expires_at > now_iso))
            .group_by(*_applications.c)
            .order_by(last_expires.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [(_row_to_application(r), r.active_tokens, r.last_expires) for r in rows]

    def purge_expired(self, now_iso: str) -> dict:
        """Delete expired codes and tokens. Returns counts per table."""
        with self.engine.begin() as conn:
            codes = conn.execute(_codes.delete().where(_codes.c.expires_at <= now_iso))
            tokens = conn.execute(_access_tokens.delete().where(_access_tokens.c.expires_at <= now_iso))
            return {"codes_deleted": codes.rowcount, "tokens_deleted": tokens.rowcount}

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        email=row.email,
        display_name=row.display_name or row.username,
        email_verified=bool(row.email_verified),
        permissions=parse_tag_set(row.permissions),
        created_at=row.created_at,
    )


def _row_to_session(row) -> SessionToken:
    return SessionToken(id=row.id, user_id=row.user_id, token=row.token, created_at=row.created_at)


def _row_to_project(row) -> Project:
    return Project(
        id=row.id,
        name=row.name,
        description=row.description or "",
        link=row.link or "/",
        permissions=parse_tag_set(row.permissions),
        created_at=row.created_at,
    )


def _row_to_application(row) -> OAuthApplication:
    return OAuthApplication(
        id=row.id,
        name=row.name,
        description=row.description or "",
        client_id=row.client_id,
        client_secret=row.client_secret,
        redirect_uris=_load_list(row.redirect_uris),
        scopes=_load_list(row.scopes),
        user_id=row.user_id,
        created_at=row.created_at,
    )


def _row_to_code(row) -> AuthorizationCode:
    return AuthorizationCode(
        code=row.code,
        client_id=row.client_id,
        user_id=row.user_id,
        redirect_uri=row.redirect_uri,
        scope=row.scope or "",
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_access_token(row) -> OAuthAccessToken:
    return OAuthAccessToken(
        access_token=row.access_token,
        client_id=row.client_id,
        user_id=row.user_id,
        scope=row.scope or "",
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
