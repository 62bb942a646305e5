from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique or foreign-key rule on users, workspaces, chats or actions was broken.

    ``constraint`` names the violated rule (``app_user_email_key``,
    ``workspace_user_unique``...) so callers can distinguish duplicates from
    dangling references.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}
        if constraint and "constraint" not in self.detail:
            self.detail["constraint"] = constraint


__all__ = ["ConstraintViolation"]
