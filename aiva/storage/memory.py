from __future__ import annotations

import json
import threading
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

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

_CHAT_SORT_KEYS = {
    "updated_at": lambda c: c.updated_at,
    "created_at": lambda c: c.created_at,
    "title": lambda c: c.title.lower() if c.title is not None else None,
    "last_message_at": lambda c: c.last_message_at,
}

_WORKSPACE_SORT_KEYS = {
    "updated_at": lambda w: w.updated_at,
    "created_at": lambda w: w.created_at,
    "name": lambda w: w.name.lower() if w.name is not None else None,
}


def _sorted_nulls_last(
    items: List[Any], keys: Dict[str, Any], sort_by: str, sort_order: str
) -> List[Any]:
    """Sort like ``ORDER BY col <dir> NULLS LAST``; unknown keys fall back to ``updated_at``."""
    key = keys.get(sort_by, keys["updated_at"])
    present = [item for item in items if key(item) is not None]
    missing = [item for item in items if key(item) is None]
    present.sort(key=key, reverse=sort_order.lower() != "asc")
    return present + missing


class MemoryStore:
    """In-process store used for tests and local development.

    State is snapshotted to ``{fs_root}/state/memory_store.json`` after every
    mutation so a restarted dev server keeps its users and chats.
    """

    def __init__(self, fs_root: str = "/tmp/aiva") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self.workspace_users: Dict[str, WorkspaceUser] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.message_actions: Dict[str, MessageAction] = {}
        self.files: Dict[str, StoredFile] = {}
        # RLock so helpers can be called while a mutation already holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return self._state_path().parent.exists()

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
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="app_user_email_key"
                )
            if user_id and user_id in self.users:
                raise ConstraintViolation(
                    "user id already exists", {"field": "id"}, constraint="app_user_pkey"
                )
            user = User(
                id=user_id or new_id(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=role,
                provider=provider,
                provider_id=provider_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

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
        with self._data_lock:
            existing = self.get_user_by_email(email)
            if existing is None:
                return self.create_user(
                    email,
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                    provider=provider,
                    provider_id=provider_id,
                    user_id=user_id,
                )
            existing.first_name = first_name or existing.first_name
            existing.last_name = last_name or existing.last_name
            existing.provider = provider
            existing.provider_id = provider_id or existing.provider_id
            existing.updated_at = datetime.utcnow()
            self._persist_state()
            return existing

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            if role is not None:
                user.role = role
            if is_active is not None:
                user.is_active = is_active
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = datetime.utcnow()
            self._persist_state()

    def list_users(
        self, *, exclude_role: Optional[str] = None, search: Optional[str] = None
    ) -> List[User]:
        needle = (search or "").strip().lower()
        with self._data_lock:
            results = []
            for user in self.users.values():
                if exclude_role and user.role == exclude_role:
                    continue
                if needle and not any(
                    needle in value.lower()
                    for value in (user.first_name, user.last_name, user.email)
                ):
                    continue
                results.append(user)
            return sorted(results, key=lambda u: (u.first_name.lower(), u.last_name.lower()))

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = meta
            self._persist_state()

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.revoked = True
            self._persist_state()

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
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("workspace owner missing", {"owner_id": owner_id})
            workspace = Workspace(
                id=new_id(),
                name=name,
                owner_id=owner_id,
                description=description,
                color=color,
                is_shared=is_shared,
            )
            self.workspaces[workspace.id] = workspace
            self._persist_state()
            return workspace

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._data_lock:
            return self.workspaces.get(workspace_id)

    def get_owned_workspace(self, workspace_id: str, owner_id: str) -> Optional[Workspace]:
        with self._data_lock:
            workspace = self.workspaces.get(workspace_id)
            if not workspace or workspace.owner_id != owner_id:
                return None
            return workspace

    def first_owned_workspace(self, owner_id: str) -> Optional[Workspace]:
        owned = [w for w in self.list_owned_workspaces(owner_id)]
        if not owned:
            return None
        return min(owned, key=lambda w: w.created_at)

    def list_owned_workspaces(
        self, owner_id: str, *, sort_by: str = "updated_at", sort_order: str = "desc"
    ) -> List[Workspace]:
        with self._data_lock:
            owned = [w for w in self.workspaces.values() if w.owner_id == owner_id]
            return _sorted_nulls_last(owned, _WORKSPACE_SORT_KEYS, sort_by, sort_order)

    def list_member_workspaces(
        self, user_id: str, *, sort_by: str = "updated_at", sort_order: str = "desc"
    ) -> List[Workspace]:
        """Workspaces the user is assigned to, with ``access_level`` populated."""
        with self._data_lock:
            results = []
            for membership in self.workspace_users.values():
                if membership.user_id != user_id:
                    continue
                workspace = self.workspaces.get(membership.workspace_id)
                if workspace is None:
                    continue
                results.append(_with_access_level(workspace, membership.access_level))
            return _sorted_nulls_last(results, _WORKSPACE_SORT_KEYS, sort_by, sort_order)

    def update_workspace(
        self,
        workspace_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        is_shared: Optional[bool] = None,
    ) -> Optional[Workspace]:
        with self._data_lock:
            workspace = self.workspaces.get(workspace_id)
            if not workspace:
                return None
            if name is not None:
                workspace.name = name
            if description is not None:
                workspace.description = description
            if color is not None:
                workspace.color = color
            if is_shared is not None:
                workspace.is_shared = is_shared
            workspace.updated_at = datetime.utcnow()
            self._persist_state()
            return workspace

    def delete_workspace(self, workspace_id: str) -> bool:
        with self._data_lock:
            if workspace_id not in self.workspaces:
                return False
            del self.workspaces[workspace_id]
            for assignment_id in [
                wid for wid, wu in self.workspace_users.items() if wu.workspace_id == workspace_id
            ]:
                del self.workspace_users[assignment_id]
            # Archived chats survive without a workspace
            for chat in self.chats.values():
                if chat.workspace_id == workspace_id:
                    chat.workspace_id = None
            self._persist_state()
            return True

    def count_active_chats(self, workspace_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for chat in self.chats.values()
                if chat.workspace_id == workspace_id and not chat.is_archived
            )

    def workspace_last_activity(self, workspace_id: str) -> Optional[datetime]:
        with self._data_lock:
            stamps = [
                chat.last_message_at
                for chat in self.chats.values()
                if chat.workspace_id == workspace_id and chat.last_message_at
            ]
            return max(stamps) if stamps else None

    # workspace users
    def assign_workspace_user(
        self,
        workspace_id: str,
        user_id: str,
        access_level: str = "member",
        *,
        assigned_by: Optional[str] = None,
    ) -> WorkspaceUser:
        with self._data_lock:
            if workspace_id not in self.workspaces:
                raise ConstraintViolation("workspace not found", {"workspace_id": workspace_id})
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if self.get_workspace_user(workspace_id, user_id):
                raise ConstraintViolation(
                    "user already assigned",
                    {"workspace_id": workspace_id, "user_id": user_id},
                    constraint="workspace_user_unique",
                )
            assignment = WorkspaceUser(
                id=new_id(),
                workspace_id=workspace_id,
                user_id=user_id,
                access_level=access_level,
                assigned_by=assigned_by,
            )
            self.workspace_users[assignment.id] = assignment
            self._persist_state()
            return assignment

    def get_workspace_user(self, workspace_id: str, user_id: str) -> Optional[WorkspaceUser]:
        with self._data_lock:
            return next(
                (
                    wu
                    for wu in self.workspace_users.values()
                    if wu.workspace_id == workspace_id and wu.user_id == user_id
                ),
                None,
            )

    def remove_workspace_user(self, workspace_id: str, user_id: str) -> bool:
        with self._data_lock:
            assignment = self.get_workspace_user(workspace_id, user_id)
            if not assignment:
                return False
            del self.workspace_users[assignment.id]
            self._persist_state()
            return True

    def update_workspace_user_access(
        self, workspace_id: str, user_id: str, access_level: str
    ) -> Optional[WorkspaceUser]:
        with self._data_lock:
            assignment = self.get_workspace_user(workspace_id, user_id)
            if not assignment:
                return None
            assignment.access_level = access_level
            self._persist_state()
            return assignment

    def list_workspace_users(self, workspace_id: str) -> List[WorkspaceUser]:
        with self._data_lock:
            return [wu for wu in self.workspace_users.values() if wu.workspace_id == workspace_id]

    # chats
    def create_chat(
        self,
        user_id: str,
        title: str,
        *,
        description: str = "",
        workspace_id: Optional[str] = None,
    ) -> Chat:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("chat owner missing", {"user_id": user_id})
            if workspace_id and workspace_id not in self.workspaces:
                raise ConstraintViolation("workspace missing", {"workspace_id": workspace_id})
            chat = Chat(
                id=new_id(),
                user_id=user_id,
                title=title,
                description=description,
                workspace_id=workspace_id,
            )
            self.chats[chat.id] = chat
            self.messages[chat.id] = []
            self._persist_state()
            return chat

    def get_chat(self, chat_id: str, *, user_id: Optional[str] = None) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                return None
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
        with self._data_lock:
            chats = [c for c in self.chats.values() if c.user_id == user_id and not c.is_archived]
            chats = _sorted_nulls_last(chats, _CHAT_SORT_KEYS, sort_by, sort_order)
            return chats[offset : offset + limit]

    def count_chats(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.chats.values() if c.user_id == user_id and not c.is_archived)

    def list_workspace_chats(self, workspace_id: str, limit: int = 10) -> List[Chat]:
        with self._data_lock:
            chats = [
                c
                for c in self.chats.values()
                if c.workspace_id == workspace_id and not c.is_archived
            ]
            chats.sort(key=lambda c: c.updated_at, reverse=True)
            return chats[:limit]

    def archive_chat(self, chat_id: str, user_id: str) -> bool:
        with self._data_lock:
            chat = self.get_chat(chat_id, user_id=user_id)
            if not chat:
                return False
            chat.is_archived = True
            chat.updated_at = datetime.utcnow()
            self._persist_state()
            return True

    def record_chat_activity(self, chat_id: str, increment: int = 2) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                return None
            now = datetime.utcnow()
            chat.message_count += increment
            chat.last_message_at = now
            chat.updated_at = now
            self._persist_state()
            return chat

    # messages
    def append_message(
        self,
        chat_id: str,
        user_id: str,
        role: str,
        content: str,
        *,
        metadata: Optional[Dict] = None,
        tokens: int = 0,
    ) -> Message:
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("chat not found", {"chat_id": chat_id})
            msg = Message(
                id=new_id(),
                chat_id=chat_id,
                user_id=user_id,
                role=role,
                content=content,
                metadata=metadata,
                tokens=tokens,
            )
            self.messages.setdefault(chat_id, []).append(msg)
            self._persist_state()
            return msg

    def list_messages(
        self, chat_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        with self._data_lock:
            msgs = self.messages.get(chat_id, [])
            if limit is None:
                return list(msgs[offset:])
            return list(msgs[offset : offset + limit])

    def count_messages(self, chat_id: str) -> int:
        with self._data_lock:
            return len(self.messages.get(chat_id, []))

    def last_message(self, chat_id: str) -> Optional[Message]:
        with self._data_lock:
            msgs = self.messages.get(chat_id) or []
            return msgs[-1] if msgs else None

    def get_message_for_user(self, message_id: str, user_id: str) -> Optional[Message]:
        """Return the message only when it sits in one of the user's chats."""
        with self._data_lock:
            for chat_id, msgs in self.messages.items():
                for msg in msgs:
                    if msg.id != message_id:
                        continue
                    chat = self.chats.get(chat_id)
                    if chat and chat.user_id == user_id:
                        return msg
                    return None
            return None

    # message actions
    def get_message_action(
        self, message_id: str, user_id: str, action_type: str
    ) -> Optional[MessageAction]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.message_actions.values()
                    if a.message_id == message_id
                    and a.user_id == user_id
                    and a.action_type == action_type
                ),
                None,
            )

    def add_message_action(self, message_id: str, user_id: str, action_type: str) -> MessageAction:
        with self._data_lock:
            if not any(m.id == message_id for msgs in self.messages.values() for m in msgs):
                raise ConstraintViolation("message not found", {"message_id": message_id})
            if self.get_message_action(message_id, user_id, action_type):
                raise ConstraintViolation(
                    "action already recorded",
                    {"message_id": message_id, "action_type": action_type},
                    constraint="message_action_unique",
                )
            action = MessageAction(
                id=new_id(), message_id=message_id, user_id=user_id, action_type=action_type
            )
            self.message_actions[action.id] = action
            self._persist_state()
            return action

    def remove_message_action(self, message_id: str, user_id: str, action_type: str) -> bool:
        with self._data_lock:
            action = self.get_message_action(message_id, user_id, action_type)
            if not action:
                return False
            del self.message_actions[action.id]
            self._persist_state()
            return True

    def count_message_actions(self, message_id: str, action_type: str) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.message_actions.values()
                if a.message_id == message_id and a.action_type == action_type
            )

    def list_actioned_messages(
        self, user_id: str, action_type: str
    ) -> List[Tuple[Message, MessageAction]]:
        """The user's messages tagged with ``action_type``, newest action first."""
        with self._data_lock:
            by_id = {m.id: m for msgs in self.messages.values() for m in msgs}
            results = [
                (by_id[a.message_id], a)
                for a in self.message_actions.values()
                if a.user_id == user_id and a.action_type == action_type and a.message_id in by_id
            ]
            return sorted(results, key=lambda pair: pair[1].created_at, reverse=True)

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("file owner missing", {"user_id": user_id})
            if chat_id and chat_id not in self.chats:
                raise ConstraintViolation("chat not found", {"chat_id": chat_id})
            stored = StoredFile(
                id=new_id(),
                original_name=original_name,
                file_name=file_name,
                user_id=user_id,
                mime_type=mime_type,
                size=size,
                url=url,
                chat_id=chat_id,
                message_id=message_id,
            )
            self.files[stored.id] = stored
            self._persist_state()
            return stored

    def list_files(self, user_id: str, *, chat_id: Optional[str] = None) -> List[StoredFile]:
        with self._data_lock:
            results = [
                f
                for f in self.files.values()
                if f.user_id == user_id and (chat_id is None or f.chat_id == chat_id)
            ]
            return sorted(results, key=lambda f: f.created_at, reverse=True)

    def get_file(self, file_id: str, *, user_id: Optional[str] = None) -> Optional[StoredFile]:
        with self._data_lock:
            stored = self.files.get(file_id)
            if not stored or (user_id and stored.user_id != user_id):
                return None
            return stored

    def delete_file(self, file_id: str, user_id: str) -> bool:
        with self._data_lock:
            if not self.get_file(file_id, user_id=user_id):
                return False
            del self.files[file_id]
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [_serialize(u) for u in self.users.values()],
                "credentials": [
                    {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                    for user_id, creds in self.credentials.items()
                ],
                "sessions": [_serialize(s) for s in self.sessions.values()],
                "workspaces": [_serialize(w) for w in self.workspaces.values()],
                "workspace_users": [_serialize(wu) for wu in self.workspace_users.values()],
                "chats": [_serialize(c) for c in self.chats.values()],
                "messages": [_serialize(m) for msgs in self.messages.values() for m in msgs],
                "message_actions": [_serialize(a) for a in self.message_actions.values()],
                "files": [_serialize(f) for f in self.files.values()],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: _deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {s["id"]: _deserialize(Session, s) for s in data.get("sessions", [])}
        self.workspaces = {
            w["id"]: _deserialize(Workspace, w) for w in data.get("workspaces", [])
        }
        self.workspace_users = {
            wu["id"]: _deserialize(WorkspaceUser, wu) for wu in data.get("workspace_users", [])
        }
        self.chats = {c["id"]: _deserialize(Chat, c) for c in data.get("chats", [])}
        self.messages = {chat_id: [] for chat_id in self.chats}
        for msg_data in data.get("messages", []):
            msg = _deserialize(Message, msg_data)
            self.messages.setdefault(msg.chat_id, []).append(msg)
        for chat_messages in self.messages.values():
            chat_messages.sort(key=lambda m: m.created_at)
        self.message_actions = {
            a["id"]: _deserialize(MessageAction, a) for a in data.get("message_actions", [])
        }
        self.files = {f["id"]: _deserialize(StoredFile, f) for f in data.get("files", [])}
        return True


def _with_access_level(workspace: Workspace, access_level: str) -> Workspace:
    copy = Workspace(**{f.name: getattr(workspace, f.name) for f in fields(Workspace)})
    copy.access_level = access_level
    return copy


def _serialize(record: Any) -> dict:
    out: dict = {}
    for f in fields(record):
        value = getattr(record, f.name)
        out[f.name] = value.isoformat() if isinstance(value, datetime) else value
    return out


def _deserialize(cls: Type[Any], data: dict) -> Any:
    kwargs: dict = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if isinstance(value, str) and f.name.endswith("_at"):
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)
