from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from aiva.storage.models import DEFAULT_WORKSPACE_COLOR

# Upper bounds for otherwise unbounded client strings and arrays
MAX_STRING_LENGTH = 65536
MAX_ARRAY_ITEMS = 100

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "payload_too_large",
    "server_error",
    "dependency_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_color(value: Optional[str]) -> Optional[str]:
    if value is not None and not _HEX_COLOR.match(value):
        raise ValueError("color must be a hex value like #3B82F6")
    return value


# auth
class RegisterRequest(_CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str

    @field_validator("first_name", "last_name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("name must not be blank")
        return cleaned

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(_CamelModel):
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class AuthResponse(_CamelModel):
    message: str
    user: UserResponse
    token: str
    token_type: str = "bearer"
    expires_at: Optional[str] = None


class VerifyResponse(_CamelModel):
    message: str = "Token is valid"
    user: UserResponse


class MessageOnlyResponse(_CamelModel):
    message: str


# chats
class PaginationResponse(_CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class CreateChatRequest(_CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=2000)
    workspace_id: Optional[str] = Field(default=None, max_length=64)


class ChatResponse(_CamelModel):
    id: str
    title: str
    description: str = ""
    user_id: str
    workspace_id: Optional[str] = None
    message_count: int = 0
    is_archived: bool = False
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    workspace_name: Optional[str] = None
    workspace_color: Optional[str] = None


class ChatListResponse(_CamelModel):
    message: str = "Chats retrieved successfully"
    chats: List[ChatResponse]
    pagination: PaginationResponse


class ChatCreatedResponse(_CamelModel):
    message: str = "Chat created successfully"
    chat: ChatResponse


class ChatArchivedResponse(_CamelModel):
    message: str = "Chat archived successfully"
    chat_id: str


class AttachedFile(_CamelModel):
    """File reference sent with a chat message; validated by the chat service."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    original_name: Optional[str] = Field(default=None, max_length=255)
    url: Optional[str] = Field(default=None, max_length=2048)
    file_name: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    blob_name: Optional[str] = Field(default=None, max_length=255)
    size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = Field(default=None, max_length=255)

    def as_reference(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SendMessageRequest(_CamelModel):
    message: str = Field(default="", max_length=MAX_STRING_LENGTH)
    chat_id: Optional[str] = Field(default=None, max_length=64)
    workspace_id: Optional[str] = Field(default=None, max_length=64)
    files: List[AttachedFile] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)


class ExchangeMessage(_CamelModel):
    id: str
    content: str
    role: str
    timestamp: datetime


class SendMessageResponse(_CamelModel):
    message: str = "Message processed successfully"
    chat_id: str
    user_message: ExchangeMessage
    ai_response: ExchangeMessage


class MessageResponse(_CamelModel):
    id: str
    chat_id: str
    user_id: str
    role: str
    content: str
    metadata: Optional[dict] = None
    tokens: int = 0
    is_edited: bool = False
    created_at: datetime
    like_count: Optional[int] = None
    bookmark_count: Optional[int] = None


class MessageListResponse(_CamelModel):
    message: str = "Messages retrieved successfully"
    messages: List[MessageResponse]
    pagination: PaginationResponse


class MessageActionRequest(_CamelModel):
    action_type: str = Field(..., max_length=32)


class ActionToggleResponse(_CamelModel):
    message: str
    action_type: str
    active: bool


# workspaces
class CreateWorkspaceRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    color: str = DEFAULT_WORKSPACE_COLOR
    is_shared: bool = False

    @field_validator("color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        return _validate_color(value)


class UpdateWorkspaceRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    color: Optional[str] = None
    is_shared: Optional[bool] = None

    @field_validator("color")
    @classmethod
    def _check_color(cls, value: Optional[str]) -> Optional[str]:
        return _validate_color(value)


class WorkspaceResponse(_CamelModel):
    id: str
    name: str
    description: str = ""
    color: str = DEFAULT_WORKSPACE_COLOR
    owner_id: str
    is_shared: bool = False
    created_at: datetime
    updated_at: datetime
    access_level: Optional[str] = None
    chat_count: Optional[int] = None
    last_activity: Optional[datetime] = None
    recent_chats: Optional[List[ChatResponse]] = None


class WorkspaceListResponse(_CamelModel):
    message: str = "Workspaces retrieved successfully"
    workspaces: List[WorkspaceResponse]
    pagination: PaginationResponse


class WorkspaceEnvelopeResponse(_CamelModel):
    message: str
    workspace: WorkspaceResponse


class WorkspaceDeletedResponse(_CamelModel):
    message: str = "Workspace deleted successfully"
    workspace_id: str


class AvailableUserResponse(_CamelModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str
    is_active: bool = True
    is_assigned: bool = False
    access_level: Optional[str] = None
    assigned_at: Optional[datetime] = None


class AvailableUsersResponse(_CamelModel):
    message: str = "Users retrieved successfully"
    users: List[AvailableUserResponse]


class AssignUsersRequest(_CamelModel):
    user_ids: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    access_level: str = Field(default="member", max_length=32)


class RemoveUsersRequest(_CamelModel):
    user_ids: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)


class UserAssignmentResult(_CamelModel):
    user_id: str
    status: str
    assignment_id: Optional[str] = None


class UserAssignmentsResponse(_CamelModel):
    message: str
    results: List[UserAssignmentResult]


class UpdateUserAccessRequest(_CamelModel):
    user_id: str = Field(default="", max_length=64)
    access_level: str = Field(default="", max_length=32)


class UserAccessResponse(_CamelModel):
    message: str = "User access level updated successfully"
    workspace_id: str
    user_id: str
    access_level: str


# bookmarks and message actions
class ActionedMessageResponse(_CamelModel):
    id: str
    message_id: str
    chat_id: str
    chat_title: Optional[str] = None
    title: str
    description: str
    content: str
    role: str
    action_type: str
    created_at: datetime
    actioned_at: datetime


class ActionedMessageListResponse(_CamelModel):
    message: str
    items: List[ActionedMessageResponse]


class MessageActionResponse(_CamelModel):
    message: str
    message_id: str
    action_type: str
    active: bool = True


# history
class HistoryEntryResponse(ChatResponse):
    last_message: Optional[str] = None
    last_message_role: Optional[str] = None


class HistoryListResponse(_CamelModel):
    message: str = "Chat history retrieved successfully"
    chats: List[HistoryEntryResponse]


class ChatHistoryResponse(_CamelModel):
    message: str = "Chat retrieved successfully"
    chat: ChatResponse
    messages: List[MessageResponse]


# files
class FileResponse(_CamelModel):
    id: str
    original_name: str
    file_name: str
    mime_type: str
    size: int
    url: str
    user_id: str
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime


class FileUploadResponse(_CamelModel):
    message: str = "File uploaded successfully"
    file: FileResponse


class FileListResponse(_CamelModel):
    message: str = "Files retrieved successfully"
    files: List[FileResponse]


class FileDeletedResponse(_CamelModel):
    message: str = "File deleted successfully"
    file_id: str


class CompareFilesRequest(_CamelModel):
    file_ids: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)


class ExtractRequest(_CamelModel):
    prompt: str = Field(..., min_length=1, max_length=4000)


class FileAnalysisResponse(_CamelModel):
    message: str = "File analyzed successfully"
    analysis: Dict[str, Any]


class FileComparisonResponse(_CamelModel):
    message: str = "Files compared successfully"
    files: List[Dict[str, Any]]
    comparison: str


class FileExtractionResponse(_CamelModel):
    message: str = "Information extracted successfully"
    file_id: str
    result: str


# app configuration
class ConfigSettingResponse(_CamelModel):
    key: str
    value: Optional[str] = None
    label: Optional[str] = None
    content_type: Optional[str] = None


class ConfigSettingsResponse(_CamelModel):
    message: str = "Configuration settings retrieved successfully"
    settings: List[ConfigSettingResponse]
    mock: bool = False


class ConfigSettingEnvelope(_CamelModel):
    message: str = "Configuration setting retrieved successfully"
    setting: ConfigSettingResponse
    mock: bool = False
