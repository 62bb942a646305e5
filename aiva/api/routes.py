from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
    UploadFile,
)
from pydantic import BaseModel

from aiva.api.schemas import (
    ActionedMessageListResponse,
    ActionedMessageResponse,
    ActionToggleResponse,
    AssignUsersRequest,
    AuthResponse,
    AvailableUserResponse,
    AvailableUsersResponse,
    ChatArchivedResponse,
    ChatCreatedResponse,
    ChatHistoryResponse,
    ChatListResponse,
    ChatResponse,
    CompareFilesRequest,
    ConfigSettingEnvelope,
    ConfigSettingResponse,
    ConfigSettingsResponse,
    CreateChatRequest,
    CreateWorkspaceRequest,
    Envelope,
    ExchangeMessage,
    ExtractRequest,
    FileAnalysisResponse,
    FileComparisonResponse,
    FileDeletedResponse,
    FileExtractionResponse,
    FileListResponse,
    FileResponse,
    FileUploadResponse,
    HistoryEntryResponse,
    HistoryListResponse,
    LoginRequest,
    MessageActionRequest,
    MessageActionResponse,
    MessageListResponse,
    MessageOnlyResponse,
    MessageResponse,
    PaginationResponse,
    RegisterRequest,
    RemoveUsersRequest,
    SendMessageRequest,
    SendMessageResponse,
    UpdateUserAccessRequest,
    UpdateWorkspaceRequest,
    UserAccessResponse,
    UserAssignmentResult,
    UserAssignmentsResponse,
    UserResponse,
    VerifyResponse,
    WorkspaceDeletedResponse,
    WorkspaceEnvelopeResponse,
    WorkspaceListResponse,
    WorkspaceResponse,
)
from aiva.logging import get_correlation_id, get_logger
from aiva.service.actions import ActionedMessage
from aiva.service.auth import AuthContext
from aiva.service.chat import ChatSummary
from aiva.service.errors import BadRequestError, PayloadTooLargeError
from aiva.service.runtime import check_rate_limit, get_runtime
from aiva.service.workspaces import WorkspaceSummary
from aiva.storage.models import Chat, Message, StoredFile, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _ok(payload: BaseModel) -> Envelope:
    data = payload.model_dump(by_alias=True, mode="json")
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        for name, value in self.headers().items():
            response.headers[name] = value


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token for ``key``; 429 with ``X-RateLimit-*`` headers when empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        headers = info.headers()
        headers["Retry-After"] = str(info.reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please slow down and try again shortly.",
            status_code=429,
            headers=headers,
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if ctx:
        return ctx
    if runtime.settings.dev_bypass_enabled:
        return runtime.auth.dev_bypass_context()
    if not authorization:
        raise _http_error("unauthorized", "Access token required", status_code=401)
    raise _http_error("unauthorized", "Invalid or expired token", status_code=401)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "Admin access required", status_code=403)
    return principal


# serializers
def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _chat_fields(chat: Chat) -> Dict[str, Any]:
    return {
        "id": chat.id,
        "title": chat.title,
        "description": chat.description,
        "user_id": chat.user_id,
        "workspace_id": chat.workspace_id,
        "message_count": chat.message_count,
        "is_archived": chat.is_archived,
        "last_message_at": chat.last_message_at,
        "created_at": chat.created_at,
        "updated_at": chat.updated_at,
    }


def _chat_response(chat: Chat, **extra: Any) -> ChatResponse:
    return ChatResponse(**{**_chat_fields(chat), **extra})


def _summary_response(summary: ChatSummary) -> ChatResponse:
    return _chat_response(
        summary.chat,
        message_count=summary.message_count,
        workspace_name=summary.workspace_name,
        workspace_color=summary.workspace_color,
    )


def _message_response(message: Message, **extra: Any) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        chat_id=message.chat_id,
        user_id=message.user_id,
        role=message.role,
        content=message.content,
        metadata=message.metadata,
        tokens=message.tokens,
        is_edited=message.is_edited,
        created_at=message.created_at,
        **extra,
    )


def _workspace_response(summary: WorkspaceSummary, **extra: Any) -> WorkspaceResponse:
    ws = summary.workspace
    return WorkspaceResponse(
        id=ws.id,
        name=ws.name,
        description=ws.description,
        color=ws.color,
        owner_id=ws.owner_id,
        is_shared=ws.is_shared,
        created_at=ws.created_at,
        updated_at=ws.updated_at,
        access_level=summary.access_level,
        chat_count=summary.chat_count,
        last_activity=summary.last_activity,
        **extra,
    )


def _actioned_response(entry: ActionedMessage) -> ActionedMessageResponse:
    return ActionedMessageResponse(
        id=entry.message.id,
        message_id=entry.message.id,
        chat_id=entry.message.chat_id,
        chat_title=entry.chat_title,
        title=entry.title,
        description=entry.description,
        content=entry.message.content,
        role=entry.message.role,
        action_type=entry.action.action_type,
        created_at=entry.message.created_at,
        actioned_at=entry.action.created_at,
    )


def _file_response(stored: StoredFile) -> FileResponse:
    return FileResponse(
        id=stored.id,
        original_name=stored.original_name,
        file_name=stored.file_name,
        mime_type=stored.mime_type,
        size=stored.size,
        url=stored.url,
        user_id=stored.user_id,
        chat_id=stored.chat_id,
        message_id=stored.message_id,
        created_at=stored.created_at,
    )


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    user, _session, tokens = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _ok(
        AuthResponse(
            message="User registered successfully",
            user=_user_response(user),
            token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    user, _session, tokens = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    logger.info("user_logged_in", user_id=user.id)
    return _ok(
        AuthResponse(
            message="Login successful",
            user=_user_response(user),
            token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        )
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        if not principal.bypass:
            raise _http_error("unauthorized", "Invalid or expired token", status_code=401)
        user = runtime.chat.ensure_user(principal)
    return _ok(VerifyResponse(user=_user_response(user)))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.revoke(principal.session_id)
        logger.info("user_logged_out", user_id=principal.user_id)
    return _ok(MessageOnlyResponse(message="Logged out successfully"))


# chats
@router.get("/chat", response_model=Envelope, tags=["chat"])
async def list_chats(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("updatedAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    summaries, paging = runtime.chat.list_chats(
        principal.user_id, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return _ok(
        ChatListResponse(
            chats=[_summary_response(s) for s in summaries],
            pagination=PaginationResponse(**paging),
        )
    )


@router.post("/chat", response_model=Envelope, status_code=201, tags=["chat"])
async def create_chat(body: CreateChatRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    chat = runtime.chat.create_chat(
        principal, body.title, description=body.description, workspace_id=body.workspace_id
    )
    return _ok(ChatCreatedResponse(chat=_chat_response(chat)))


@router.post("/chat/message", response_model=Envelope, tags=["chat"])
async def send_message(
    body: SendMessageRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"chat:{principal.user_id}",
        runtime.settings.chat_rate_limit_per_minute,
        response=response,
    )
    exchange = await runtime.chat.send_message(
        principal,
        body.message,
        chat_id=body.chat_id,
        workspace_id=body.workspace_id,
        files=[f.as_reference() for f in body.files],
    )
    return _ok(
        SendMessageResponse(
            chat_id=exchange.chat.id,
            user_message=ExchangeMessage(
                id=exchange.user_message.id,
                content=exchange.user_message.content,
                role="user",
                timestamp=exchange.user_message.created_at,
            ),
            ai_response=ExchangeMessage(
                id=exchange.ai_message.id,
                content=exchange.ai_message.content,
                role="assistant",
                timestamp=exchange.ai_message.created_at,
            ),
        )
    )


@router.get("/chat/{chat_id}/messages", response_model=Envelope, tags=["chat"])
async def list_chat_messages(
    chat_id: str = Path(..., max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    rows, paging = runtime.chat.list_messages(chat_id, principal.user_id, page=page, limit=limit)
    return _ok(
        MessageListResponse(
            messages=[
                _message_response(
                    row.message, like_count=row.like_count, bookmark_count=row.bookmark_count
                )
                for row in rows
            ],
            pagination=PaginationResponse(**paging),
        )
    )


@router.delete("/chat/{chat_id}", response_model=Envelope, tags=["chat"])
async def archive_chat(
    chat_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.chat.archive_chat(chat_id, principal.user_id)
    return _ok(ChatArchivedResponse(chat_id=chat_id))


@router.post(
    "/chat/{chat_id}/messages/{message_id}/actions", response_model=Envelope, tags=["chat"]
)
async def toggle_message_action(
    body: MessageActionRequest,
    chat_id: str = Path(..., max_length=64),
    message_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    active = runtime.chat.toggle_message_action(
        chat_id, message_id, principal.user_id, body.action_type
    )
    return _ok(
        ActionToggleResponse(
            message="Action added" if active else "Action removed",
            action_type=body.action_type,
            active=active,
        )
    )


# workspaces
@router.get("/workspaces", response_model=Envelope, tags=["workspaces"])
async def list_workspaces(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("updatedAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    summaries, paging = runtime.workspaces.list_workspaces(
        principal, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return _ok(
        WorkspaceListResponse(
            workspaces=[_workspace_response(s) for s in summaries],
            pagination=PaginationResponse(**paging),
        )
    )


@router.post("/workspaces", response_model=Envelope, status_code=201, tags=["workspaces"])
async def create_workspace(
    body: CreateWorkspaceRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    workspace = runtime.workspaces.create_workspace(
        principal,
        body.name,
        description=body.description,
        color=body.color,
        is_shared=body.is_shared,
    )
    return _ok(
        WorkspaceEnvelopeResponse(
            message="Workspace created successfully",
            workspace=_workspace_response(
                WorkspaceSummary(workspace=workspace, access_level="owner", chat_count=0)
            ),
        )
    )


@router.get("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def get_workspace(
    workspace_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    details = runtime.workspaces.get_details(principal, workspace_id)
    recent = [_chat_response(chat, message_count=count) for chat, count in details.recent_chats]
    return _ok(
        WorkspaceEnvelopeResponse(
            message="Workspace details retrieved successfully",
            workspace=_workspace_response(details.summary, recent_chats=recent),
        )
    )


@router.put("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def update_workspace(
    body: UpdateWorkspaceRequest,
    workspace_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    workspace = runtime.workspaces.update_workspace(
        principal,
        workspace_id,
        name=body.name,
        description=body.description,
        color=body.color,
        is_shared=body.is_shared,
    )
    summary = WorkspaceSummary(
        workspace=workspace,
        access_level="owner",
        chat_count=runtime.store.count_active_chats(workspace.id),
        last_activity=runtime.store.workspace_last_activity(workspace.id),
    )
    return _ok(
        WorkspaceEnvelopeResponse(
            message="Workspace updated successfully", workspace=_workspace_response(summary)
        )
    )


@router.delete("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def delete_workspace(
    workspace_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    runtime.workspaces.delete_workspace(principal, workspace_id)
    return _ok(WorkspaceDeletedResponse(workspace_id=workspace_id))


@router.get(
    "/workspaces/{workspace_id}/available-users", response_model=Envelope, tags=["workspaces"]
)
async def available_users(
    workspace_id: str = Path(..., max_length=64),
    search: str = Query("", max_length=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    entries = runtime.workspaces.available_users(principal, workspace_id, search=search)
    return _ok(
        AvailableUsersResponse(
            users=[
                AvailableUserResponse(
                    id=e.user.id,
                    first_name=e.user.first_name,
                    last_name=e.user.last_name,
                    email=e.user.email,
                    is_active=e.user.is_active,
                    is_assigned=e.is_assigned,
                    access_level=e.assignment.access_level if e.assignment else None,
                    assigned_at=e.assignment.assigned_at if e.assignment else None,
                )
                for e in entries
            ]
        )
    )


@router.post(
    "/workspaces/{workspace_id}/assign-user", response_model=Envelope, tags=["workspaces"]
)
async def assign_users(
    body: AssignUsersRequest,
    workspace_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    results = runtime.workspaces.assign_users(
        principal, workspace_id, body.user_ids, body.access_level
    )
    return _ok(
        UserAssignmentsResponse(
            message="User assignments completed",
            results=[UserAssignmentResult(**r) for r in results],
        )
    )


@router.post(
    "/workspaces/{workspace_id}/remove-user", response_model=Envelope, tags=["workspaces"]
)
async def remove_users(
    body: RemoveUsersRequest,
    workspace_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    results = runtime.workspaces.remove_users(principal, workspace_id, body.user_ids)
    return _ok(
        UserAssignmentsResponse(
            message="User removals completed",
            results=[UserAssignmentResult(**r) for r in results],
        )
    )


@router.put(
    "/workspaces/{workspace_id}/user-access", response_model=Envelope, tags=["workspaces"]
)
async def update_user_access(
    body: UpdateUserAccessRequest,
    workspace_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    assignment = runtime.workspaces.update_user_access(
        principal, workspace_id, body.user_id, body.access_level
    )
    return _ok(
        UserAccessResponse(
            workspace_id=assignment.workspace_id,
            user_id=assignment.user_id,
            access_level=assignment.access_level,
        )
    )


# bookmarks
@router.get("/bookmarks", response_model=Envelope, tags=["bookmarks"])
async def list_bookmarks(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    entries = runtime.actions.list_actioned(principal.user_id, "bookmark")
    return _ok(
        ActionedMessageListResponse(
            message="Bookmarks retrieved successfully",
            items=[_actioned_response(e) for e in entries],
        )
    )


@router.post("/bookmarks/{message_id}", response_model=Envelope, status_code=201, tags=["bookmarks"])
async def add_bookmark(
    response: Response,
    message_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _action, created = runtime.actions.set_action(message_id, principal.user_id, "bookmark")
    if not created:
        response.status_code = 200
    return _ok(
        MessageActionResponse(
            message="Bookmark added" if created else "Message already bookmarked",
            message_id=message_id,
            action_type="bookmark",
        )
    )


@router.delete("/bookmarks/{message_id}", response_model=Envelope, tags=["bookmarks"])
async def remove_bookmark(
    message_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.actions.clear_action(message_id, principal.user_id, "bookmark")
    return _ok(
        MessageActionResponse(
            message="Bookmark removed", message_id=message_id, action_type="bookmark", active=False
        )
    )


# message actions
@router.get("/message-actions/liked", response_model=Envelope, tags=["message-actions"])
async def liked_messages(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    entries = runtime.actions.list_actioned(principal.user_id, "like")
    return _ok(
        ActionedMessageListResponse(
            message="Liked messages retrieved successfully",
            items=[_actioned_response(e) for e in entries],
        )
    )


@router.get("/message-actions/disliked", response_model=Envelope, tags=["message-actions"])
async def disliked_messages(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    entries = runtime.actions.list_actioned(principal.user_id, "dislike")
    return _ok(
        ActionedMessageListResponse(
            message="Disliked messages retrieved successfully",
            items=[_actioned_response(e) for e in entries],
        )
    )


@router.post(
    "/message-actions/{message_id}/{action_type}",
    response_model=Envelope,
    tags=["message-actions"],
)
async def set_message_action(
    message_id: str = Path(..., max_length=64),
    action_type: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _action, created = runtime.actions.set_action(message_id, principal.user_id, action_type)
    return _ok(
        MessageActionResponse(
            message="Action added" if created else "Action already recorded",
            message_id=message_id,
            action_type=action_type,
        )
    )


@router.delete(
    "/message-actions/{message_id}/{action_type}",
    response_model=Envelope,
    tags=["message-actions"],
)
async def clear_message_action(
    message_id: str = Path(..., max_length=64),
    action_type: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.actions.clear_action(message_id, principal.user_id, action_type)
    return _ok(
        MessageActionResponse(
            message="Action removed", message_id=message_id, action_type=action_type, active=False
        )
    )


# history
@router.get("/history", response_model=Envelope, tags=["history"])
async def chat_history_list(
    limit: int = Query(50, ge=1, le=200), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    entries = runtime.chat.history(principal.user_id, limit=limit)
    return _ok(
        HistoryListResponse(
            chats=[
                HistoryEntryResponse(
                    **_chat_fields(chat),
                    last_message=last.content[:200] if last else None,
                    last_message_role=last.role if last else None,
                )
                for chat, last in entries
            ]
        )
    )


@router.get("/history/{chat_id}", response_model=Envelope, tags=["history"])
async def chat_history_detail(
    chat_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    chat, messages = runtime.chat.chat_history(chat_id, principal.user_id)
    return _ok(
        ChatHistoryResponse(
            chat=_chat_response(chat),
            messages=[_message_response(m) for m in messages],
        )
    )


# files
@router.post("/files/upload", response_model=Envelope, status_code=201, tags=["files"])
async def upload_file(
    response: Response,
    file: UploadFile = File(...),
    chat_id: Optional[str] = Form(None, alias="chatId"),
    message_id: Optional[str] = Form(None, alias="messageId"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"files:{principal.user_id}",
        runtime.settings.files_upload_rate_limit_per_minute,
        response=response,
    )
    max_bytes = runtime.settings.max_upload_bytes
    # Read one byte past the cap so oversize uploads are detected without buffering them whole
    data = await file.read(max_bytes + 1)
    await file.close()
    if len(data) > max_bytes:
        raise PayloadTooLargeError("File too large", detail={"maxBytes": max_bytes})
    user = runtime.chat.ensure_user(principal)
    stored = await runtime.files.upload(
        user.id,
        file.filename or "",
        data,
        content_type=file.content_type,
        chat_id=chat_id or None,
        message_id=message_id or None,
    )
    return _ok(FileUploadResponse(file=_file_response(stored)))


@router.get("/files", response_model=Envelope, tags=["files"])
async def list_files(
    chat_id: Optional[str] = Query(None, alias="chatId", max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    files = runtime.files.list_files(principal.user_id, chat_id=chat_id)
    return _ok(FileListResponse(files=[_file_response(f) for f in files]))


@router.get("/files/download/{file_id}", tags=["files"])
async def download_file(
    file_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    stored, data = await runtime.files.download(file_id, principal.user_id)
    disposition = f"attachment; filename*=UTF-8''{quote(stored.original_name)}"
    return Response(
        content=data,
        media_type=stored.mime_type,
        headers={"Content-Disposition": disposition},
    )


@router.delete("/files/{file_id}", response_model=Envelope, tags=["files"])
async def delete_file(
    file_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.files.delete(file_id, principal.user_id)
    return _ok(FileDeletedResponse(file_id=file_id))


@router.post("/files/compare", response_model=Envelope, tags=["files"])
async def compare_files(body: CompareFilesRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.files.compare(body.file_ids, principal.user_id)
    return _ok(FileComparisonResponse(files=result["files"], comparison=result["comparison"]))


@router.post("/files/{file_id}/analyze", response_model=Envelope, tags=["files"])
async def analyze_file(
    file_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    analysis = await runtime.files.analyze(file_id, principal.user_id)
    return _ok(FileAnalysisResponse(analysis=analysis))


@router.post("/files/{file_id}/extract", response_model=Envelope, tags=["files"])
async def extract_from_file(
    body: ExtractRequest,
    file_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.files.extract(file_id, principal.user_id, body.prompt)
    return _ok(FileExtractionResponse(file_id=file_id, result=result))


# app configuration
@router.get("/config/settings", response_model=Envelope, tags=["config"])
async def list_config_settings(
    key_filter: Optional[str] = Query(None, alias="keyFilter", max_length=256),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    settings = runtime.app_config.list_settings(key_filter)
    return _ok(
        ConfigSettingsResponse(
            settings=[ConfigSettingResponse.model_validate(s) for s in settings],
            mock=runtime.app_config.is_mock,
        )
    )


@router.get("/config/settings/{key}", response_model=Envelope, tags=["config"])
async def get_config_setting(
    key: str = Path(..., max_length=256),
    label: Optional[str] = Query(None, max_length=256),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if not key.strip():
        raise BadRequestError("Configuration key is required")
    setting = runtime.app_config.get_setting(key, label)
    return _ok(
        ConfigSettingEnvelope(
            setting=ConfigSettingResponse.model_validate(setting),
            mock=runtime.app_config.is_mock,
        )
    )
