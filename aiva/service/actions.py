from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from aiva.logging import get_logger
from aiva.service.chat import is_uuid
from aiva.service.errors import BadRequestError, NotFoundError
from aiva.storage.errors import ConstraintViolation
from aiva.storage.memory import MemoryStore
from aiva.storage.models import ACTION_TYPES, Message, MessageAction
from aiva.storage.postgres import PostgresStore

logger = get_logger(__name__)

# Setting one of these clears the other
_EXCLUSIVE_ACTIONS = {"like": "dislike", "dislike": "like"}


@dataclass
class ActionedMessage:
    message: Message
    action: MessageAction
    chat_title: Optional[str] = None

    @property
    def title(self) -> str:
        return f"AI Response - {self.message.created_at.isoformat()}"

    @property
    def description(self) -> str:
        content = self.message.content
        return content[:100] + "..." if len(content) > 100 else content


class MessageActionService:
    """Per-user tags on messages: bookmarks, likes, dislikes and stars."""

    def __init__(self, store: PostgresStore | MemoryStore) -> None:
        self.store = store

    def _message(self, message_id: str, user_id: str) -> Message:
        message = (
            self.store.get_message_for_user(message_id, user_id) if is_uuid(message_id) else None
        )
        if not message:
            raise NotFoundError(
                "Message not found or access denied", detail={"messageId": message_id}
            )
        return message

    @staticmethod
    def _check_type(action_type: str) -> None:
        if action_type not in ACTION_TYPES:
            raise BadRequestError(
                "Action type must be one of: " + ", ".join(ACTION_TYPES),
                detail={"actionType": action_type},
            )

    def list_actioned(self, user_id: str, action_type: str) -> List[ActionedMessage]:
        self._check_type(action_type)
        titles: dict[str, Optional[str]] = {}
        results = []
        for message, action in self.store.list_actioned_messages(user_id, action_type):
            if message.chat_id not in titles:
                chat = self.store.get_chat(message.chat_id)
                titles[message.chat_id] = chat.title if chat else None
            results.append(
                ActionedMessage(message=message, action=action, chat_title=titles[message.chat_id])
            )
        return results

    def set_action(self, message_id: str, user_id: str, action_type: str) -> tuple[MessageAction, bool]:
        """Record ``action_type``; returns the action and whether it was newly created."""
        self._check_type(action_type)
        self._message(message_id, user_id)
        existing = self.store.get_message_action(message_id, user_id, action_type)
        if existing:
            return existing, False
        opposite = _EXCLUSIVE_ACTIONS.get(action_type)
        if opposite and self.store.remove_message_action(message_id, user_id, opposite):
            logger.info(
                "message_action_replaced",
                message_id=message_id,
                removed=opposite,
                added=action_type,
            )
        try:
            action = self.store.add_message_action(message_id, user_id, action_type)
        except ConstraintViolation:
            existing = self.store.get_message_action(message_id, user_id, action_type)
            if existing is None:
                raise
            return existing, False
        logger.info("message_action_added", message_id=message_id, action_type=action_type)
        return action, True

    def clear_action(self, message_id: str, user_id: str, action_type: str) -> None:
        self._check_type(action_type)
        self._message(message_id, user_id)
        if not self.store.remove_message_action(message_id, user_id, action_type):
            raise NotFoundError(
                "Bookmark not found" if action_type == "bookmark" else "Action not found",
                detail={"messageId": message_id, "actionType": action_type},
            )
        logger.info("message_action_removed", message_id=message_id, action_type=action_type)
