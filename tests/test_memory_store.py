"""Unit tests for the in-memory store.

Covers users, workspaces and memberships, chats and messages, message actions
and file metadata, plus the JSON snapshot the store reloads on start.
"""

from datetime import datetime

import pytest

from aiva.storage.errors import ConstraintViolation
from aiva.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Owner@Example.com", first_name="Olive", last_name="Owner")


@pytest.fixture
def chat(memory_store, user):
    workspace = memory_store.create_workspace(user.id, "Research")
    return memory_store.create_chat(user.id, "First chat", workspace_id=workspace.id)


class TestUsers:
    def test_email_is_normalized(self, memory_store, user):
        assert user.email == "owner@example.com"
        assert memory_store.get_user_by_email("OWNER@example.com").id == user.id

    def test_duplicate_email_rejected(self, memory_store, user):
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("owner@example.com")
        assert exc_info.value.constraint == "app_user_email_key"

    def test_upsert_refreshes_existing_user(self, memory_store, user):
        updated = memory_store.upsert_user("owner@example.com", first_name="Oona")
        assert updated.id == user.id
        assert updated.first_name == "Oona"
        assert updated.last_name == "Owner"

    def test_upsert_creates_with_given_id(self, memory_store):
        created = memory_store.upsert_user("dev@example.com", user_id="dev-user")
        assert created.id == "dev-user"
        assert memory_store.get_user("dev-user") is created

    def test_list_users_search_and_role_filter(self, memory_store, user):
        memory_store.create_user("admin@example.com", first_name="Ada", role="admin")
        memory_store.create_user("bob@example.com", first_name="Bob")
        names = [u.first_name for u in memory_store.list_users(exclude_role="admin")]
        assert names == ["Bob", "Olive"]
        found = memory_store.list_users(search="bob")
        assert [u.email for u in found] == ["bob@example.com"]


class TestWorkspaces:
    def test_owned_lookup_checks_owner(self, memory_store, user):
        other = memory_store.create_user("other@example.com")
        workspace = memory_store.create_workspace(user.id, "Mine")
        assert memory_store.get_owned_workspace(workspace.id, user.id) is workspace
        assert memory_store.get_owned_workspace(workspace.id, other.id) is None

    def test_member_listing_carries_access_level(self, memory_store, user):
        member = memory_store.create_user("member@example.com")
        workspace = memory_store.create_workspace(user.id, "Shared", is_shared=True)
        memory_store.assign_workspace_user(workspace.id, member.id, "readonly", assigned_by=user.id)
        listed = memory_store.list_member_workspaces(member.id)
        assert [(w.id, w.access_level) for w in listed] == [(workspace.id, "readonly")]
        # The stored workspace itself is not mutated by the listing
        assert memory_store.get_workspace(workspace.id).access_level is None

    def test_duplicate_assignment_rejected(self, memory_store, user):
        member = memory_store.create_user("member@example.com")
        workspace = memory_store.create_workspace(user.id, "Shared")
        memory_store.assign_workspace_user(workspace.id, member.id)
        with pytest.raises(ConstraintViolation):
            memory_store.assign_workspace_user(workspace.id, member.id)

    def test_delete_detaches_chats_and_memberships(self, memory_store, user):
        member = memory_store.create_user("member@example.com")
        workspace = memory_store.create_workspace(user.id, "Doomed")
        memory_store.assign_workspace_user(workspace.id, member.id)
        chat = memory_store.create_chat(user.id, "Old", workspace_id=workspace.id)
        memory_store.archive_chat(chat.id, user.id)

        assert memory_store.delete_workspace(workspace.id) is True
        assert memory_store.get_chat(chat.id).workspace_id is None
        assert memory_store.list_workspace_users(workspace.id) == []

    def test_active_chat_count_ignores_archived(self, memory_store, user):
        workspace = memory_store.create_workspace(user.id, "Counted")
        memory_store.create_chat(user.id, "Active", workspace_id=workspace.id)
        archived = memory_store.create_chat(user.id, "Archived", workspace_id=workspace.id)
        memory_store.archive_chat(archived.id, user.id)
        assert memory_store.count_active_chats(workspace.id) == 1

    def test_owned_listing_sorts_by_name(self, memory_store, user):
        beta = memory_store.create_workspace(user.id, "beta")
        alpha = memory_store.create_workspace(user.id, "Alpha")
        ascending = memory_store.list_owned_workspaces(user.id, sort_by="name", sort_order="asc")
        assert [w.id for w in ascending] == [alpha.id, beta.id]
        descending = memory_store.list_owned_workspaces(user.id, sort_by="name")
        assert [w.id for w in descending] == [beta.id, alpha.id]


class TestChatsAndMessages:
    def test_chat_requires_existing_workspace(self, memory_store, user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_chat(user.id, "Bad", workspace_id="missing")

    def test_get_chat_scoped_to_owner(self, memory_store, chat):
        other = memory_store.create_user("other@example.com")
        assert memory_store.get_chat(chat.id, user_id=other.id) is None
        assert memory_store.get_chat(chat.id, user_id=chat.user_id) is chat

    def test_archived_chats_hidden_from_listing(self, memory_store, user, chat):
        memory_store.archive_chat(chat.id, user.id)
        assert memory_store.list_chats(user.id) == []
        assert memory_store.count_chats(user.id) == 0

    def test_list_chats_sorting(self, memory_store, user, chat):
        second = memory_store.create_chat(user.id, "Another chat")
        by_title = memory_store.list_chats(user.id, sort_by="title", sort_order="asc")
        assert [c.id for c in by_title] == [second.id, chat.id]

    @pytest.mark.parametrize("sort_order", ["asc", "desc"])
    def test_chats_without_messages_sort_last(self, memory_store, user, chat, sort_order):
        older = memory_store.create_chat(user.id, "Older")
        newer = memory_store.create_chat(user.id, "Newer")
        older.last_message_at = datetime(2024, 1, 1)
        newer.last_message_at = datetime(2024, 6, 1)
        listed = memory_store.list_chats(user.id, sort_by="last_message_at", sort_order=sort_order)
        expected = [older.id, newer.id] if sort_order == "asc" else [newer.id, older.id]
        assert [c.id for c in listed] == expected + [chat.id]

    def test_messages_keep_insertion_order(self, memory_store, user, chat):
        first = memory_store.append_message(chat.id, user.id, "user", "hello")
        second = memory_store.append_message(chat.id, user.id, "assistant", "hi", tokens=7)
        assert [m.id for m in memory_store.list_messages(chat.id)] == [first.id, second.id]
        assert memory_store.last_message(chat.id).tokens == 7
        assert memory_store.list_messages(chat.id, limit=1, offset=1)[0].id == second.id

    def test_record_chat_activity_bumps_count(self, memory_store, chat):
        updated = memory_store.record_chat_activity(chat.id, increment=2)
        assert updated.message_count == 2
        assert updated.last_message_at is not None

    def test_message_lookup_scoped_to_chat_owner(self, memory_store, user, chat):
        other = memory_store.create_user("other@example.com")
        msg = memory_store.append_message(chat.id, user.id, "assistant", "answer")
        assert memory_store.get_message_for_user(msg.id, user.id).id == msg.id
        assert memory_store.get_message_for_user(msg.id, other.id) is None


class TestMessageActions:
    def test_action_unique_per_user_message_and_type(self, memory_store, user, chat):
        msg = memory_store.append_message(chat.id, user.id, "assistant", "answer")
        memory_store.add_message_action(msg.id, user.id, "bookmark")
        with pytest.raises(ConstraintViolation):
            memory_store.add_message_action(msg.id, user.id, "bookmark")
        memory_store.add_message_action(msg.id, user.id, "like")
        assert memory_store.count_message_actions(msg.id, "bookmark") == 1

    def test_actioned_messages_newest_first(self, memory_store, user, chat):
        first = memory_store.append_message(chat.id, user.id, "assistant", "one")
        second = memory_store.append_message(chat.id, user.id, "assistant", "two")
        older = memory_store.add_message_action(first.id, user.id, "star")
        older.created_at = datetime(2020, 1, 1)
        memory_store.add_message_action(second.id, user.id, "star")
        listed = memory_store.list_actioned_messages(user.id, "star")
        assert [m.id for m, _ in listed] == [second.id, first.id]

    def test_remove_missing_action_returns_false(self, memory_store, user, chat):
        msg = memory_store.append_message(chat.id, user.id, "assistant", "answer")
        assert memory_store.remove_message_action(msg.id, user.id, "like") is False


class TestFiles:
    def test_file_lifecycle(self, memory_store, user, chat):
        stored = memory_store.create_file(
            user.id, "notes.txt", "abc.txt", mime_type="text/plain", size=5, chat_id=chat.id
        )
        assert memory_store.list_files(user.id, chat_id=chat.id) == [stored]
        assert memory_store.list_files(user.id, chat_id="other") == []
        assert memory_store.delete_file(stored.id, user.id) is True
        assert memory_store.get_file(stored.id) is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com", first_name="Pat")
        workspace = store.create_workspace(user.id, "Kept")
        chat = store.create_chat(user.id, "Kept chat", workspace_id=workspace.id)
        store.append_message(chat.id, user.id, "user", "remember me")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user_by_email("persist@example.com").first_name == "Pat"
        assert reloaded.get_chat(chat.id).workspace_id == workspace.id
        assert reloaded.last_message(chat.id).content == "remember me"
