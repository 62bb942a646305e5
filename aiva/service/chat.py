from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from aiva.logging import get_logger, sanitize_error_message
from aiva.service.auth import AuthContext
from aiva.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ServiceError,
)
from aiva.service.file_analysis import FileAnalysisService
from aiva.service.llm import LLMService, friendly_error_message
from aiva.storage.memory import MemoryStore
from aiva.storage.models import (
    ACTION_TYPES,
    DEFAULT_WORKSPACE_COLOR,
    DEFAULT_WORKSPACE_DESCRIPTION,
    DEFAULT_WORKSPACE_NAME,
    Chat,
    Message,
    User,
    Workspace,
)
from aiva.storage.postgres import PostgresStore

logger = get_logger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

CHAT_SORT_FIELDS = {
    "updatedAt": "updated_at",
    "createdAt": "created_at",
    "title": "title",
    "lastMessageAt": "last_message_at",
}

AI_FAILURE_PLACEHOLDER = (
    "Sorry, I encountered an issue processing your request. Please try again."
)
FILES_UNREADABLE_MESSAGE = "User sent files but there was an error processing them."


def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


@dataclass
class ChatSummary:
    chat: Chat
    workspace_name: Optional[str]
    workspace_color: Optional[str]
    message_count: int


@dataclass
class MessageWithCounts:
    message: Message
    like_count: int
    bookmark_count: int


@dataclass
class MessageExchange:
    chat: Chat
    user_message: Message
    ai_message: Message


class ChatService:
    """Chat threads, message history and the send-message turn."""

    def __init__(
        self,
        store: PostgresStore | MemoryStore,
        llm: LLMService,
        file_analysis: FileAnalysisService,
    ) -> None:
        self.store = store
        self.llm = llm
        self.file_analysis = file_analysis

    # users and workspaces
    def ensure_user(self, auth: AuthContext) -> User:
        """Return the caller's user row, creating the dev-bypass account on demand."""
        user = self.store.get_user(auth.user_id)
        if user:
            return user
        if auth.bypass:
            logger.info("dev_bypass_user_created", user_id=auth.user_id)
            return self.store.upsert_user(
                f"{auth.user_id}@example.com",
                first_name="Test",
                last_name="User",
                role=auth.role or "user",
                user_id=auth.user_id,
            )
        raise NotFoundError("User account not found. Please log in again.")

    def _create_default_workspace(self, user_id: str, *, fallback: bool = False) -> Workspace:
        workspace = self.store.create_workspace(
            user_id,
            DEFAULT_WORKSPACE_NAME,
            description=DEFAULT_WORKSPACE_DESCRIPTION,
            color=DEFAULT_WORKSPACE_COLOR,
        )
        logger.info(
            "default_workspace_created",
            workspace_id=workspace.id,
            user_id=user_id,
            fallback=fallback,
        )
        return workspace

    def _owned_or_default_workspace(self, user_id: str) -> Workspace:
        return self.store.first_owned_workspace(user_id) or self._create_default_workspace(user_id)

    # chats
    def list_chats(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "updatedAt",
        sort_order: str = "desc",
    ) -> Tuple[List[ChatSummary], Dict[str, int]]:
        if sort_by not in CHAT_SORT_FIELDS:
            raise BadRequestError(
                "sortBy must be one of: " + ", ".join(CHAT_SORT_FIELDS),
                detail={"sortBy": sort_by},
            )
        chats = self.store.list_chats(
            user_id,
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=CHAT_SORT_FIELDS[sort_by],
            sort_order=sort_order,
        )
        workspaces: Dict[str, Optional[Workspace]] = {}
        summaries = []
        for chat in chats:
            workspace = None
            if chat.workspace_id:
                if chat.workspace_id not in workspaces:
                    workspaces[chat.workspace_id] = self.store.get_workspace(chat.workspace_id)
                workspace = workspaces[chat.workspace_id]
            summaries.append(
                ChatSummary(
                    chat=chat,
                    workspace_name=workspace.name if workspace else None,
                    workspace_color=workspace.color if workspace else None,
                    message_count=self.store.count_messages(chat.id),
                )
            )
        total = self.store.count_chats(user_id)
        return summaries, pagination(page, limit, total)

    def create_chat(
        self,
        auth: AuthContext,
        title: str,
        *,
        description: str = "",
        workspace_id: Optional[str] = None,
    ) -> Chat:
        user = self.ensure_user(auth)
        if not workspace_id:
            workspace = self._owned_or_default_workspace(user.id)
        else:
            workspace = (
                self.store.get_owned_workspace(workspace_id, user.id)
                if is_uuid(workspace_id)
                else None
            )
            if workspace is None:
                existing = self.store.get_workspace(workspace_id) if is_uuid(workspace_id) else None
                if existing is not None:
                    raise ForbiddenError("You do not have access to this workspace.")
                workspace = self._create_default_workspace(user.id, fallback=True)
        chat = self.store.create_chat(
            user.id, title, description=description or "", workspace_id=workspace.id
        )
        logger.info("chat_created", chat_id=chat.id, user_id=user.id, workspace_id=workspace.id)
        return chat

    def get_owned_chat(self, chat_id: str, user_id: str) -> Chat:
        chat = self.store.get_chat(chat_id, user_id=user_id) if is_uuid(chat_id) else None
        if not chat:
            raise NotFoundError("Chat not found or access denied", detail={"chatId": chat_id})
        return chat

    def list_messages(
        self, chat_id: str, user_id: str, *, page: int = 1, limit: int = 50
    ) -> Tuple[List[MessageWithCounts], Dict[str, int]]:
        self.get_owned_chat(chat_id, user_id)
        messages = self.store.list_messages(chat_id, limit=limit, offset=(page - 1) * limit)
        rows = [
            MessageWithCounts(
                message=msg,
                like_count=self.store.count_message_actions(msg.id, "like"),
                bookmark_count=self.store.count_message_actions(msg.id, "bookmark"),
            )
            for msg in messages
        ]
        return rows, pagination(page, limit, self.store.count_messages(chat_id))

    def archive_chat(self, chat_id: str, user_id: str) -> None:
        self.get_owned_chat(chat_id, user_id)
        self.store.archive_chat(chat_id, user_id)
        logger.info("chat_archived", chat_id=chat_id, user_id=user_id)

    def toggle_message_action(
        self, chat_id: str, message_id: str, user_id: str, action_type: str
    ) -> bool:
        """Flip ``action_type`` on a message in the user's chat; return the new state."""
        if action_type not in ACTION_TYPES:
            raise BadRequestError(
                "Action type must be one of: " + ", ".join(ACTION_TYPES),
                detail={"actionType": action_type},
            )
        message = (
            self.store.get_message_for_user(message_id, user_id) if is_uuid(message_id) else None
        )
        if not message or message.chat_id != chat_id:
            raise NotFoundError("Message not found or access denied", detail={"messageId": message_id})
        if self.store.remove_message_action(message_id, user_id, action_type):
            return False
        self.store.add_message_action(message_id, user_id, action_type)
        return True

    # send message
    @staticmethod
    def validate_files(files: Sequence[Dict[str, Any]]) -> None:
        for index, file in enumerate(files):
            if not isinstance(file, dict):
                raise BadRequestError("Files must be an array of file objects")
            if not file.get("originalName"):
                raise BadRequestError(f"File at index {index} missing originalName property")
            if not file.get("url"):
                raise BadRequestError(f"File at index {index} missing url property")
            if not file.get("fileName"):
                logger.warning("chat_file_missing_file_name", index=index)

    @staticmethod
    def default_title(message: str, files: Sequence[Dict[str, Any]]) -> str:
        if message.strip() or not files:
            return "New Chat"
        title = f"File: {files[0]['originalName']}"
        if len(files) > 1:
            title += f" and {len(files) - 1} more"
        return title

    @staticmethod
    def blob_name_for(file: Dict[str, Any]) -> str:
        """Storage key of an attachment; the URL's last path segment when not given."""
        name = file.get("fileName") or file.get("name") or file.get("blobName")
        if not name and file.get("url"):
            path = urlparse(str(file["url"])).path
            name = path.rsplit("/", 1)[-1]
        return name or file["originalName"]

    def _resolve_message_workspace(self, user_id: str, workspace_id: Optional[str]) -> Workspace:
        if workspace_id and not is_uuid(workspace_id):
            logger.warning("chat_workspace_id_invalid", workspace_id=workspace_id)
            workspace_id = None
        if not workspace_id:
            return self._owned_or_default_workspace(user_id)
        workspace = self.store.get_owned_workspace(workspace_id, user_id)
        if workspace is None:
            logger.warning("chat_workspace_not_owned", workspace_id=workspace_id, user_id=user_id)
            return self._create_default_workspace(user_id, fallback=True)
        return workspace

    async def _file_sections(self, files: Sequence[Dict[str, Any]]) -> str:
        sections = []
        for file in files:
            name = file.get("originalName") or "Unknown File"
            try:
                extracted = await self.file_analysis.extract_file_content(
                    self.blob_name_for(file), file["originalName"]
                )
                content = extracted["content"]
            except Exception as exc:
                logger.warning("chat_file_read_failed", original_name=name, error=str(exc))
                content = f"[Content not available: {sanitize_error_message(str(exc))}]"
            sections.append(f"File: {name}\nContent:\n{content}\n---\n")
        return "\n".join(sections)

    async def build_user_content(self, message: str, files: Sequence[Dict[str, Any]]) -> str:
        text = message.strip()
        if not files:
            return text
        try:
            sections = await self._file_sections(files)
        except Exception as exc:
            logger.error("chat_files_processing_failed", error=str(exc))
            return text or FILES_UNREADABLE_MESSAGE
        if text:
            return f"{text}\n\nAttached Files:\n{sections}"
        return f"Analyze the following files:\n\n{sections}"

    async def send_message(
        self,
        auth: AuthContext,
        message: str,
        *,
        chat_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        files: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> MessageExchange:
        files = list(files or [])
        message = message or ""
        if not message.strip() and not files:
            raise BadRequestError(
                "Please provide a message or attach files to send",
                detail={"error": "Message content or files are required"},
            )
        self.validate_files(files)
        try:
            return await self._send_message(
                auth, message, chat_id=chat_id, workspace_id=workspace_id, files=files
            )
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("chat_message_failed", user_id=auth.user_id, error=str(exc))
            raise ServerError(
                "Sorry, there was an error processing your message. Please try again.",
                detail={
                    "error": "Failed to process message",
                    "details": sanitize_error_message(str(exc)),
                },
            ) from exc

    async def _send_message(
        self,
        auth: AuthContext,
        message: str,
        *,
        chat_id: Optional[str],
        workspace_id: Optional[str],
        files: List[Dict[str, Any]],
    ) -> MessageExchange:
        user = self.ensure_user(auth)
        workspace = self._resolve_message_workspace(user.id, workspace_id)

        if chat_id:
            chat = self.get_owned_chat(chat_id, user.id)
        else:
            title = message[:100] if message.strip() else self.default_title(message, files)
            chat = self.store.create_chat(
                user.id, title, description="Auto-generated chat", workspace_id=workspace.id
            )
            logger.info("chat_created", chat_id=chat.id, user_id=user.id, workspace_id=workspace.id)

        content = await self.build_user_content(message, files)
        if not content:
            raise BadRequestError(
                "Please provide a message or attach files to send",
                detail={"error": "Message content or files are required"},
            )

        # Prior turns only; the new user message is appended separately
        history = [
            {"role": m.role, "content": m.content} for m in self.store.list_messages(chat.id)
        ]
        metadata = None
        if files:
            metadata = {
                "files": [
                    {
                        "originalName": f.get("originalName"),
                        "fileName": self.blob_name_for(f),
                        "url": f.get("url"),
                        "size": f.get("size"),
                        "mimeType": f.get("mimeType"),
                    }
                    for f in files
                ]
            }
        user_message = self.store.append_message(
            chat.id, user.id, "user", content, metadata=metadata
        )

        try:
            completion = await self.llm.complete(history, content)
        except Exception as exc:
            logger.error(
                "chat_completion_failed",
                chat_id=chat.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            ai_message = self.store.append_message(
                chat.id, user.id, "assistant", AI_FAILURE_PLACEHOLDER
            )
            self.store.record_chat_activity(chat.id, increment=2)
            raise ServerError(
                "Sorry, there was an error processing your message. Please try again.",
                detail={
                    "error": "Failed to get AI response",
                    "details": sanitize_error_message(str(exc)),
                    "hint": friendly_error_message(exc),
                    "chatId": chat.id,
                    "userMessageId": user_message.id,
                    "aiMessageId": ai_message.id,
                },
            ) from exc

        ai_message = self.store.append_message(
            chat.id,
            user.id,
            "assistant",
            completion.content,
            tokens=completion.total_tokens,
        )
        chat = self.store.record_chat_activity(chat.id, increment=2) or chat
        logger.info(
            "chat_message_processed",
            chat_id=chat.id,
            user_id=user.id,
            file_count=len(files),
            tokens=completion.total_tokens,
        )
        return MessageExchange(chat=chat, user_message=user_message, ai_message=ai_message)

    # history
    def history(self, user_id: str, *, limit: int = 50) -> List[Tuple[Chat, Optional[Message]]]:
        """Most recently active chats, each with its latest message for previews."""
        chats = self.store.list_chats(user_id, limit=limit, sort_by="updated_at", sort_order="desc")
        return [(chat, self.store.last_message(chat.id)) for chat in chats]

    def chat_history(self, chat_id: str, user_id: str) -> Tuple[Chat, List[Message]]:
        chat = self.get_owned_chat(chat_id, user_id)
        return chat, self.store.list_messages(chat.id)
