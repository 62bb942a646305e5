from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from aiva.logging import get_logger
from aiva.service.auth import AuthContext
from aiva.service.chat import is_uuid, pagination
from aiva.service.errors import BadRequestError, NotFoundError
from aiva.storage.errors import ConstraintViolation
from aiva.storage.memory import MemoryStore
from aiva.storage.models import (
    ASSIGNABLE_ACCESS_LEVELS,
    DEFAULT_WORKSPACE_COLOR,
    Chat,
    User,
    Workspace,
    WorkspaceUser,
)
from aiva.storage.postgres import PostgresStore

logger = get_logger(__name__)

_NOT_FOUND = "Workspace not found or access denied"

WORKSPACE_SORT_FIELDS = {
    "updatedAt": "updated_at",
    "createdAt": "created_at",
    "name": "name",
}


@dataclass
class WorkspaceSummary:
    workspace: Workspace
    access_level: str
    chat_count: int
    last_activity: Optional[datetime] = None


@dataclass
class WorkspaceDetails:
    summary: WorkspaceSummary
    recent_chats: List[Tuple[Chat, int]]


@dataclass
class AvailableUser:
    user: User
    assignment: Optional[WorkspaceUser]

    @property
    def is_assigned(self) -> bool:
        return self.assignment is not None


class WorkspaceService:
    """Workspace CRUD for admins and membership-scoped reads for users.

    Admins see the workspaces they own (access level ``owner``); other users
    only see workspaces they were assigned to, with the assigned level.
    """

    def __init__(self, store: PostgresStore | MemoryStore) -> None:
        self.store = store

    def _summary(self, workspace: Workspace, access_level: str) -> WorkspaceSummary:
        return WorkspaceSummary(
            workspace=workspace,
            access_level=access_level,
            chat_count=self.store.count_active_chats(workspace.id),
            last_activity=self.store.workspace_last_activity(workspace.id),
        )

    def _owned(self, workspace_id: str, owner_id: str) -> Workspace:
        workspace = (
            self.store.get_owned_workspace(workspace_id, owner_id) if is_uuid(workspace_id) else None
        )
        if not workspace:
            raise NotFoundError(_NOT_FOUND, detail={"workspaceId": workspace_id})
        return workspace

    def list_workspaces(
        self,
        auth: AuthContext,
        *,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "updatedAt",
        sort_order: str = "desc",
    ) -> Tuple[List[WorkspaceSummary], Dict[str, int]]:
        if sort_by not in WORKSPACE_SORT_FIELDS:
            raise BadRequestError(
                "sortBy must be one of: " + ", ".join(WORKSPACE_SORT_FIELDS),
                detail={"sortBy": sort_by},
            )
        order = {"sort_by": WORKSPACE_SORT_FIELDS[sort_by], "sort_order": sort_order}
        if auth.is_admin:
            visible = [
                (w, "owner") for w in self.store.list_owned_workspaces(auth.user_id, **order)
            ]
        else:
            visible = [
                (w, w.access_level or "member")
                for w in self.store.list_member_workspaces(auth.user_id, **order)
            ]
        offset = (page - 1) * limit
        summaries = [self._summary(w, level) for w, level in visible[offset : offset + limit]]
        return summaries, pagination(page, limit, len(visible))

    def create_workspace(
        self,
        auth: AuthContext,
        name: str,
        *,
        description: str = "",
        color: str = DEFAULT_WORKSPACE_COLOR,
        is_shared: bool = False,
    ) -> Workspace:
        workspace = self.store.create_workspace(
            auth.user_id, name, description=description, color=color, is_shared=is_shared
        )
        logger.info("workspace_created", workspace_id=workspace.id, owner_id=auth.user_id)
        return workspace

    def get_details(self, auth: AuthContext, workspace_id: str) -> WorkspaceDetails:
        workspace: Optional[Workspace] = None
        access_level = "owner"
        if is_uuid(workspace_id):
            if auth.is_admin:
                workspace = self.store.get_owned_workspace(workspace_id, auth.user_id)
            else:
                membership = self.store.get_workspace_user(workspace_id, auth.user_id)
                if membership:
                    workspace = self.store.get_workspace(workspace_id)
                    access_level = membership.access_level
        if not workspace:
            raise NotFoundError(_NOT_FOUND, detail={"workspaceId": workspace_id})
        recent = [
            (chat, self.store.count_messages(chat.id))
            for chat in self.store.list_workspace_chats(workspace.id, limit=10)
        ]
        return WorkspaceDetails(summary=self._summary(workspace, access_level), recent_chats=recent)

    def update_workspace(
        self,
        auth: AuthContext,
        workspace_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        is_shared: Optional[bool] = None,
    ) -> Workspace:
        self._owned(workspace_id, auth.user_id)
        updated = self.store.update_workspace(
            workspace_id, name=name, description=description, color=color, is_shared=is_shared
        )
        if not updated:
            raise NotFoundError(_NOT_FOUND, detail={"workspaceId": workspace_id})
        logger.info("workspace_updated", workspace_id=workspace_id)
        return updated

    def delete_workspace(self, auth: AuthContext, workspace_id: str) -> None:
        self._owned(workspace_id, auth.user_id)
        active = self.store.count_active_chats(workspace_id)
        if active > 0:
            raise BadRequestError(
                "Workspace contains active chats. Please archive or move them first.",
                detail={"error": "Cannot delete workspace", "activeChats": active},
            )
        self.store.delete_workspace(workspace_id)
        logger.info("workspace_deleted", workspace_id=workspace_id, owner_id=auth.user_id)

    def available_users(
        self, auth: AuthContext, workspace_id: str, *, search: str = ""
    ) -> List[AvailableUser]:
        self._owned(workspace_id, auth.user_id)
        assignments = {wu.user_id: wu for wu in self.store.list_workspace_users(workspace_id)}
        users = self.store.list_users(exclude_role="admin", search=search or None)
        return [AvailableUser(user=u, assignment=assignments.get(u.id)) for u in users]

    def assign_users(
        self,
        auth: AuthContext,
        workspace_id: str,
        user_ids: Sequence[str],
        access_level: str = "member",
    ) -> List[Dict[str, str]]:
        if not user_ids:
            raise BadRequestError("Please provide an array of user IDs to assign")
        _check_access_level(access_level)
        self._owned(workspace_id, auth.user_id)
        results = []
        for user_id in user_ids:
            if self.store.get_workspace_user(workspace_id, user_id):
                results.append({"userId": user_id, "status": "already_assigned"})
                continue
            if not is_uuid(user_id) or not self.store.get_user(user_id):
                results.append({"userId": user_id, "status": "user_not_found"})
                continue
            try:
                assignment = self.store.assign_workspace_user(
                    workspace_id, user_id, access_level, assigned_by=auth.user_id
                )
            except ConstraintViolation:
                # Lost a race with a concurrent assignment
                results.append({"userId": user_id, "status": "already_assigned"})
                continue
            results.append(
                {"userId": user_id, "assignmentId": assignment.id, "status": "assigned"}
            )
        logger.info(
            "workspace_users_assigned",
            workspace_id=workspace_id,
            assigned=sum(1 for r in results if r["status"] == "assigned"),
        )
        return results

    def remove_users(
        self, auth: AuthContext, workspace_id: str, user_ids: Sequence[str]
    ) -> List[Dict[str, str]]:
        if not user_ids:
            raise BadRequestError("Please provide an array of user IDs to remove")
        self._owned(workspace_id, auth.user_id)
        results = []
        for user_id in user_ids:
            removed = self.store.remove_workspace_user(workspace_id, user_id)
            results.append({"userId": user_id, "status": "removed" if removed else "not_found"})
        logger.info("workspace_users_removed", workspace_id=workspace_id, requested=len(user_ids))
        return results

    def update_user_access(
        self, auth: AuthContext, workspace_id: str, user_id: str, access_level: str
    ) -> WorkspaceUser:
        if not user_id or not access_level:
            raise BadRequestError("User ID and access level are required")
        _check_access_level(access_level)
        self._owned(workspace_id, auth.user_id)
        assignment = self.store.update_workspace_user_access(workspace_id, user_id, access_level)
        if not assignment:
            raise NotFoundError(
                "User is not assigned to this workspace",
                detail={"workspaceId": workspace_id, "userId": user_id},
            )
        return assignment


def _check_access_level(access_level: str) -> None:
    if access_level not in ASSIGNABLE_ACCESS_LEVELS:
        raise BadRequestError(
            "Access level must be one of: " + ", ".join(ASSIGNABLE_ACCESS_LEVELS),
            detail={"accessLevel": access_level},
        )
