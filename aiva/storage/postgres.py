from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from aiva.logging import get_logger
from aiva.storage.errors import ConstraintViolation
from aiva.storage.models import (
    DEFAULT_WORKSPACE_COLOR,
    Chat,
    Message,
    MessageAction,
    Session,
    StoredFile,
    User,
    Workspace,
    WorkspaceUser,
    new_id,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        provider TEXT NOT NULL DEFAULT 'local',
        provider_id TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now(),
        last_login_at TIMESTAMP,
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_addr TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        color TEXT NOT NULL DEFAULT '#3B82F6',
        is_shared BOOLEAN NOT NULL DEFAULT FALSE,
        owner_id UUID NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_user (
        id UUID PRIMARY KEY,
        workspace_id UUID NOT NULL REFERENCES workspace(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_level TEXT NOT NULL DEFAULT 'member',
        assigned_by UUID REFERENCES app_user(id),
        assigned_at TIMESTAMP NOT NULL DEFAULT now(),
        CONSTRAINT workspace_user_unique UNIQUE (workspace_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat (
        id UUID PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        user_id UUID NOT NULL REFERENCES app_user(id),
        workspace_id UUID REFERENCES workspace(id) ON DELETE SET NULL,
        message_count INTEGER NOT NULL DEFAULT 0,
        is_archived BOOLEAN NOT NULL DEFAULT FALSE,
        last_message_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES chat(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata JSONB,
        tokens INTEGER NOT NULL DEFAULT 0,
        is_edited BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT clock_timestamp()
    )
    """,
    "CREATE INDEX IF NOT EXISTS message_chat_created_idx ON message (chat_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS message_action (
        id UUID PRIMARY KEY,
        message_id UUID NOT NULL REFERENCES message(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        action_type TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        CONSTRAINT message_action_unique UNIQUE (message_id, user_id, action_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stored_file (
        id UUID PRIMARY KEY,
        original_name TEXT NOT NULL,
        file_name TEXT NOT NULL,
        mime_type TEXT NOT NULL DEFAULT 'application/octet-stream',
        size BIGINT NOT NULL DEFAULT 0,
        url TEXT NOT NULL DEFAULT '',
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        chat_id UUID REFERENCES chat(id) ON DELETE SET NULL,
        message_id UUID REFERENCES message(id) ON DELETE SET NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "auth_session",
    "workspace",
    "workspace_user",
    "chat",
    "message",
    "message_action",
    "stored_file",
)

_CHAT_SORT_COLUMNS = {
    "updated_at": "c.updated_at",
    "created_at": "c.created_at",
    "title": "c.title",
    "last_message_at": "c.last_message_at",
}

_WORKSPACE_SORT_COLUMNS = {
    "updated_at": "w.updated_at",
    "created_at": "w.created_at",
    "name": "w.name",
}


def _order_clause(columns: dict, sort_by: str, sort_order: str) -> str:
    column = columns.get(sort_by, columns["updated_at"])
    direction = "ASC" if sort_order.lower() == "asc" else "DESC"
    return f"ORDER BY {column} {direction} NULLS LAST"


def _valid_id(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store for users, workspaces, chats, messages and files."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the chat tables when they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            provider=row.get("provider", "local"),
            provider_id=row.get("provider_id"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _workspace_from_row(row: dict) -> Workspace:
        return Workspace(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]),
            description=row.get("description") or "",
            color=row.get("color") or DEFAULT_WORKSPACE_COLOR,
            is_shared=row.get("is_shared", False),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            access_level=row.get("access_level"),
        )

    @staticmethod
    def _workspace_user_from_row(row: dict) -> WorkspaceUser:
        return WorkspaceUser(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            user_id=str(row["user_id"]),
            access_level=row.get("access_level", "member"),
            assigned_by=_str_or_none(row.get("assigned_by")),
            assigned_at=row.get("assigned_at") or datetime.utcnow(),
        )

    @staticmethod
    def _chat_from_row(row: dict) -> Chat:
        return Chat(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row.get("description") or "",
            workspace_id=_str_or_none(row.get("workspace_id")),
            message_count=row.get("message_count") or 0,
            is_archived=row.get("is_archived", False),
            last_message_at=row.get("last_message_at"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = None
        return Message(
            id=str(row["id"]),
            chat_id=str(row["chat_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            content=row["content"],
            metadata=metadata,
            tokens=row.get("tokens") or 0,
            is_edited=row.get("is_edited", False),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _action_from_row(row: dict, prefix: str = "") -> MessageAction:
        return MessageAction(
            id=str(row[f"{prefix}id"]),
            message_id=str(row[f"{prefix}message_id"]),
            user_id=str(row[f"{prefix}user_id"]),
            action_type=row[f"{prefix}action_type"],
            created_at=row.get(f"{prefix}created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _file_from_row(row: dict) -> StoredFile:
        return StoredFile(
            id=str(row["id"]),
            original_name=row["original_name"],
            file_name=row["file_name"],
            user_id=str(row["user_id"]),
            mime_type=row.get("mime_type") or "application/octet-stream",
            size=row.get("size") or 0,
            url=row.get("url") or "",
            chat_id=_str_or_none(row.get("chat_id")),
            message_id=_str_or_none(row.get("message_id")),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        provider: str = "local",
        provider_id: Optional[str] = None,
        user_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        user_id = user_id or new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, is_active, provider, provider_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, first_name, last_name, role, is_active, provider, provider_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint=constraint
            )
        return self._user_from_row(row)

    def upsert_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        provider: str = "local",
        provider_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        """Create the user or refresh names/provider of the account with that email."""
        normalized = email.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, email, first_name, last_name, role, provider, provider_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET first_name = COALESCE(NULLIF(EXCLUDED.first_name, ''), app_user.first_name),
                    last_name = COALESCE(NULLIF(EXCLUDED.last_name, ''), app_user.last_name),
                    provider = EXCLUDED.provider,
                    provider_id = COALESCE(EXCLUDED.provider_id, app_user.provider_id),
                    updated_at = now()
                RETURNING *
                """,
                (user_id or new_id(), normalized, first_name, last_name, role, provider, provider_id),
            ).fetchone()
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _valid_id(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        if not _valid_id(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET first_name = COALESCE(%s, first_name),
                    last_name = COALESCE(%s, last_name),
                    role = COALESCE(%s, role),
                    is_active = COALESCE(%s, is_active),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (first_name, last_name, role, is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login_at = now() WHERE id = %s", (user_id,))

    def list_users(
        self, *, exclude_role: Optional[str] = None, search: Optional[str] = None
    ) -> List[User]:
        clauses = []
        params: list[Any] = []
        if exclude_role:
            clauses.append("role <> %s")
            params.append(exclude_role)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            clauses.append("(first_name ILIKE %s OR last_name ILIKE %s OR email ILIKE %s)")
            params.extend([pattern, pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY first_name, last_name", params
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _valid_id(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE id = %s", (session_id,)).fetchone()
        if not row:
            return None
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except json.JSONDecodeError:
                meta = None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at", datetime.utcnow()),
            expires_at=row.get("expires_at", datetime.utcnow()),
            revoked=row.get("revoked", False),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            meta=meta,
        )

    def set_session_meta(self, session_id: str, meta: dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (json.dumps(meta), session_id),
            )

    def revoke_session(self, session_id: str) -> None:
        if not _valid_id(session_id):
            return
        with self._connect() as conn:
            conn.execute("UPDATE auth_session SET revoked = TRUE WHERE id = %s", (session_id,))

    # workspaces
    def create_workspace(
        self,
        owner_id: str,
        name: str,
        *,
        description: str = "",
        color: str = DEFAULT_WORKSPACE_COLOR,
        is_shared: bool = False,
    ) -> Workspace:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workspace (id, name, description, color, is_shared, owner_id)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, description, color, is_shared, owner_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workspace owner missing", {"owner_id": owner_id})
        return self._workspace_from_row(row)

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        if not _valid_id(workspace_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workspace WHERE id = %s", (workspace_id,)).fetchone()
        return self._workspace_from_row(row) if row else None

    def get_owned_workspace(self, workspace_id: str, owner_id: str) -> Optional[Workspace]:
        if not _valid_id(workspace_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace WHERE id = %s AND owner_id = %s",
                (workspace_id, owner_id),
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def first_owned_workspace(self, owner_id: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace WHERE owner_id = %s ORDER BY created_at ASC LIMIT 1",
                (owner_id,),
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def list_owned_workspaces(
        self, owner_id: str, *, sort_by: str = "updated_at", sort_order: str = "desc"
    ) -> List[Workspace]:
        order = _order_clause(_WORKSPACE_SORT_COLUMNS, sort_by, sort_order)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT w.* FROM workspace w WHERE w.owner_id = %s {order}",
                (owner_id,),
            ).fetchall()
        return [self._workspace_from_row(row) for row in rows]

    def list_member_workspaces(
        self, user_id: str, *, sort_by: str = "updated_at", sort_order: str = "desc"
    ) -> List[Workspace]:
        """Workspaces the user is assigned to, with ``access_level`` populated."""
        order = _order_clause(_WORKSPACE_SORT_COLUMNS, sort_by, sort_order)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT w.*, wu.access_level
                FROM workspace w
                JOIN workspace_user wu ON wu.workspace_id = w.id
                WHERE wu.user_id = %s
                {order}
                """,
                (user_id,),
            ).fetchall()
        return [self._workspace_from_row(row) for row in rows]

    def update_workspace(
        self,
        workspace_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        is_shared: Optional[bool] = None,
    ) -> Optional[Workspace]:
        if not _valid_id(workspace_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workspace
                SET name = COALESCE(%s, name),
                    description = COALESCE(%s, description),
                    color = COALESCE(%s, color),
                    is_shared = COALESCE(%s, is_shared),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, description, color, is_shared, workspace_id),
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def delete_workspace(self, workspace_id: str) -> bool:
        if not _valid_id(workspace_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM workspace WHERE id = %s", (workspace_id,))
            return cur.rowcount > 0

    def count_active_chats(self, workspace_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM chat WHERE workspace_id = %s AND is_archived = FALSE",
                (workspace_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def workspace_last_activity(self, workspace_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(last_message_at) AS last_activity FROM chat WHERE workspace_id = %s",
                (workspace_id,),
            ).fetchone()
        return row.get("last_activity") if row else None

    # workspace users
    def assign_workspace_user(
        self,
        workspace_id: str,
        user_id: str,
        access_level: str = "member",
        *,
        assigned_by: Optional[str] = None,
    ) -> WorkspaceUser:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workspace_user (id, workspace_id, user_id, access_level, assigned_by)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), workspace_id, user_id, access_level, assigned_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already assigned",
                {"workspace_id": workspace_id, "user_id": user_id},
                constraint="workspace_user_unique",
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "workspace or user not found", {"workspace_id": workspace_id, "user_id": user_id}
            )
        return self._workspace_user_from_row(row)

    def get_workspace_user(self, workspace_id: str, user_id: str) -> Optional[WorkspaceUser]:
        if not (_valid_id(workspace_id) and _valid_id(user_id)):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_user WHERE workspace_id = %s AND user_id = %s",
                (workspace_id, user_id),
            ).fetchone()
        return self._workspace_user_from_row(row) if row else None

    def remove_workspace_user(self, workspace_id: str, user_id: str) -> bool:
        if not (_valid_id(workspace_id) and _valid_id(user_id)):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM workspace_user WHERE workspace_id = %s AND user_id = %s",
                (workspace_id, user_id),
            )
            return cur.rowcount > 0

    def update_workspace_user_access(
        self, workspace_id: str, user_id: str, access_level: str
    ) -> Optional[WorkspaceUser]:
        if not (_valid_id(workspace_id) and _valid_id(user_id)):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workspace_user SET access_level = %s
                WHERE workspace_id = %s AND user_id = %s
                RETURNING *
                """,
                (access_level, workspace_id, user_id),
            ).fetchone()
        return self._workspace_user_from_row(row) if row else None

    def list_workspace_users(self, workspace_id: str) -> List[WorkspaceUser]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workspace_user WHERE workspace_id = %s", (workspace_id,)
            ).fetchall()
        return [self._workspace_user_from_row(row) for row in rows]

    # chats
    def create_chat(
        self,
        user_id: str,
        title: str,
        *,
        description: str = "",
        workspace_id: Optional[str] = None,
    ) -> Chat:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO chat (id, title, description, user_id, workspace_id)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), title, description, user_id, workspace_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "chat owner or workspace missing", {"user_id": user_id, "workspace_id": workspace_id}
            )
        return self._chat_from_row(row)

    def get_chat(self, chat_id: str, *, user_id: Optional[str] = None) -> Optional[Chat]:
        if not _valid_id(chat_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat WHERE id = %s", (chat_id,)).fetchone()
        if not row:
            return None
        chat = self._chat_from_row(row)
        if user_id and chat.user_id != user_id:
            return None
        return chat

    def list_chats(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> List[Chat]:
        order = _order_clause(_CHAT_SORT_COLUMNS, sort_by, sort_order)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT c.* FROM chat c
                WHERE c.user_id = %s AND c.is_archived = FALSE
                {order}
                LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [self._chat_from_row(row) for row in rows]

    def count_chats(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM chat WHERE user_id = %s AND is_archived = FALSE",
                (user_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def list_workspace_chats(self, workspace_id: str, limit: int = 10) -> List[Chat]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chat
                WHERE workspace_id = %s AND is_archived = FALSE
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (workspace_id, limit),
            ).fetchall()
        return [self._chat_from_row(row) for row in rows]

    def archive_chat(self, chat_id: str, user_id: str) -> bool:
        if not _valid_id(chat_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE chat SET is_archived = TRUE, updated_at = now() WHERE id = %s AND user_id = %s",
                (chat_id, user_id),
            )
            return cur.rowcount > 0

    def record_chat_activity(self, chat_id: str, increment: int = 2) -> Optional[Chat]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat
                SET message_count = message_count + %s,
                    last_message_at = now(),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (increment, chat_id),
            ).fetchone()
        return self._chat_from_row(row) if row else None

    # messages
    def append_message(
        self,
        chat_id: str,
        user_id: str,
        role: str,
        content: str,
        *,
        metadata: Optional[dict] = None,
        tokens: int = 0,
    ) -> Message:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO message (id, chat_id, user_id, role, content, metadata, tokens)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        chat_id,
                        user_id,
                        role,
                        content,
                        json.dumps(metadata) if metadata else None,
                        tokens,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat not found", {"chat_id": chat_id})
        return self._message_from_row(row)

    def list_messages(
        self, chat_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        if not _valid_id(chat_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM message WHERE chat_id = %s
                ORDER BY created_at ASC
                LIMIT %s OFFSET %s
                """,
                (chat_id, limit, offset),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    def count_messages(self, chat_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM message WHERE chat_id = %s", (chat_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    def last_message(self, chat_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM message WHERE chat_id = %s ORDER BY created_at DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
        return self._message_from_row(row) if row else None

    def get_message_for_user(self, message_id: str, user_id: str) -> Optional[Message]:
        if not _valid_id(message_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT m.* FROM message m
                JOIN chat c ON c.id = m.chat_id
                WHERE m.id = %s AND c.user_id = %s
                """,
                (message_id, user_id),
            ).fetchone()
        return self._message_from_row(row) if row else None

    # message actions
    def get_message_action(
        self, message_id: str, user_id: str, action_type: str
    ) -> Optional[MessageAction]:
        if not _valid_id(message_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM message_action
                WHERE message_id = %s AND user_id = %s AND action_type = %s
                """,
                (message_id, user_id, action_type),
            ).fetchone()
        return self._action_from_row(row) if row else None

    def add_message_action(self, message_id: str, user_id: str, action_type: str) -> MessageAction:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO message_action (id, message_id, user_id, action_type)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), message_id, user_id, action_type),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "action already recorded",
                {"message_id": message_id, "action_type": action_type},
                constraint="message_action_unique",
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("message not found", {"message_id": message_id})
        return self._action_from_row(row)

    def remove_message_action(self, message_id: str, user_id: str, action_type: str) -> bool:
        if not _valid_id(message_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM message_action
                WHERE message_id = %s AND user_id = %s AND action_type = %s
                """,
                (message_id, user_id, action_type),
            )
            return cur.rowcount > 0

    def count_message_actions(self, message_id: str, action_type: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM message_action WHERE message_id = %s AND action_type = %s",
                (message_id, action_type),
            ).fetchone()
        return int(row["c"]) if row else 0

    def list_actioned_messages(
        self, user_id: str, action_type: str
    ) -> List[Tuple[Message, MessageAction]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.*,
                       a.id AS a_id, a.message_id AS a_message_id, a.user_id AS a_user_id,
                       a.action_type AS a_action_type, a.created_at AS a_created_at
                FROM message_action a
                JOIN message m ON m.id = a.message_id
                WHERE a.user_id = %s AND a.action_type = %s
                ORDER BY a.created_at DESC
                """,
                (user_id, action_type),
            ).fetchall()
        return [(self._message_from_row(row), self._action_from_row(row, "a_")) for row in rows]

    # files
    def create_file(
        self,
        user_id: str,
        original_name: str,
        file_name: str,
        *,
        mime_type: str = "application/octet-stream",
        size: int = 0,
        url: str = "",
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> StoredFile:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO stored_file (id, original_name, file_name, mime_type, size, url, user_id, chat_id, message_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        original_name,
                        file_name,
                        mime_type,
                        size,
                        url,
                        user_id,
                        chat_id,
                        message_id,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "file owner, chat or message missing", {"user_id": user_id, "chat_id": chat_id}
            )
        return self._file_from_row(row)

    def list_files(self, user_id: str, *, chat_id: Optional[str] = None) -> List[StoredFile]:
        params: list[Any] = [user_id]
        query = "SELECT * FROM stored_file WHERE user_id = %s"
        if chat_id:
            if not _valid_id(chat_id):
                return []
            query += " AND chat_id = %s"
            params.append(chat_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC", params).fetchall()
        return [self._file_from_row(row) for row in rows]

    def get_file(self, file_id: str, *, user_id: Optional[str] = None) -> Optional[StoredFile]:
        if not _valid_id(file_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM stored_file WHERE id = %s", (file_id,)).fetchone()
        if not row:
            return None
        stored = self._file_from_row(row)
        if user_id and stored.user_id != user_id:
            return None
        return stored

    def delete_file(self, file_id: str, user_id: str) -> bool:
        if not _valid_id(file_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM stored_file WHERE id = %s AND user_id = %s", (file_id, user_id)
            )
            return cur.rowcount > 0


__all__ = ["PostgresStore"]
