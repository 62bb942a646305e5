from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

ACCESS_LEVELS = ("owner", "member", "readonly")
ASSIGNABLE_ACCESS_LEVELS = ("member", "readonly")
ACTION_TYPES = ("like", "dislike", "bookmark", "star")
MESSAGE_ROLES = ("user", "assistant", "system")

DEFAULT_WORKSPACE_NAME = "Default Workspace"
DEFAULT_WORKSPACE_DESCRIPTION = "Auto-created default workspace"
DEFAULT_WORKSPACE_COLOR = "#3B82F6"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    is_active: bool = True
    provider: str = "local"
    provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Workspace:
    id: str
    name: str
    owner_id: str
    description: str = ""
    color: str = DEFAULT_WORKSPACE_COLOR
    is_shared: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    # Populated by membership listings; not a column of the workspace table
    access_level: Optional[str] = None


@dataclass
class WorkspaceUser:
    id: str
    workspace_id: str
    user_id: str
    access_level: str = "member"
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Chat:
    id: str
    user_id: str
    title: str
    description: str = ""
    workspace_id: Optional[str] = None
    message_count: int = 0
    is_archived: bool = False
    last_message_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Message:
    id: str
    chat_id: str
    user_id: str
    role: str
    content: str
    metadata: Dict | None = None
    tokens: int = 0
    is_edited: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class MessageAction:
    id: str
    message_id: str
    user_id: str
    action_type: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class StoredFile:
    id: str
    original_name: str
    file_name: str
    user_id: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    url: str = ""
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
