"""Unit tests for chat orchestration: workspace resolution, history, files and LLM failures."""

import threading

import pytest

from aiva.service.auth import AuthContext
from aiva.service.blob import MemoryBlobStorage
from aiva.service.chat import AI_FAILURE_PLACEHOLDER, ChatService, pagination
from aiva.service.errors import BadRequestError, ForbiddenError, NotFoundError, ServerError
from aiva.service.file_analysis import FileAnalysisService
from aiva.service.llm import ChatCompletionResult, LLMService
from aiva.storage.memory import MemoryStore


class RecordingBackend:
    mode = "recording"

    def __init__(self, reply="Sure thing.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, messages, *, max_tokens, temperature):
        self.calls.append(messages)
        if self.error:
            raise self.error
        return ChatCompletionResult(content=self.reply, usage={"total_tokens": 25})


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def blob():
    return MemoryBlobStorage()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def chat_service(store, blob, backend):
    llm = LLMService(backend, system_prompt="You are AIVA.")
    return ChatService(store, llm, FileAnalysisService(llm, blob))


@pytest.fixture
def auth(store):
    user = store.create_user("chatter@example.com", first_name="Cat")
    return AuthContext(user_id=user.id, role="user", email=user.email)


class TestPagination:
    def test_pages_round_up(self):
        assert pagination(1, 20, 41) == {"page": 1, "limit": 20, "total": 41, "pages": 3}
        assert pagination(1, 20, 0)["pages"] == 0


class TestEnsureUser:
    def test_unknown_user_rejected(self, chat_service):
        ghost = AuthContext(user_id="ghost", role="user")
        with pytest.raises(NotFoundError, match="User account not found"):
            chat_service.ensure_user(ghost)

    def test_bypass_user_created_on_demand(self, chat_service, store):
        dev = AuthContext(user_id="dev-1", role="admin", bypass=True)
        user = chat_service.ensure_user(dev)
        assert user.id == "dev-1"
        assert user.email == "dev-1@example.com"
        assert user.role == "admin"
        assert store.get_user("dev-1") is not None


class TestCreateChat:
    def test_default_workspace_created_once(self, chat_service, store, auth):
        first = chat_service.create_chat(auth, "One")
        second = chat_service.create_chat(auth, "Two")
        assert first.workspace_id == second.workspace_id
        workspace = store.get_workspace(first.workspace_id)
        assert workspace.name == "Default Workspace"
        assert workspace.owner_id == auth.user_id

    def test_foreign_workspace_forbidden(self, chat_service, store, auth):
        other = store.create_user("other@example.com")
        foreign = store.create_workspace(other.id, "Not yours")
        with pytest.raises(ForbiddenError):
            chat_service.create_chat(auth, "Sneaky", workspace_id=foreign.id)

    def test_unknown_workspace_falls_back_to_new_default(self, chat_service, store, auth):
        chat = chat_service.create_chat(
            auth, "Lost", workspace_id="7d1f2a4e-0000-4000-8000-000000000000"
        )
        assert store.get_workspace(chat.workspace_id).owner_id == auth.user_id


class TestListChats:
    def test_invalid_sort_field(self, chat_service, auth):
        with pytest.raises(BadRequestError, match="sortBy must be one of"):
            chat_service.list_chats(auth.user_id, sort_by="owner")

    def test_summaries_include_workspace_and_counts(self, chat_service, store, auth):
        chat = chat_service.create_chat(auth, "Listed")
        store.append_message(chat.id, auth.user_id, "user", "hi")
        summaries, paging = chat_service.list_chats(auth.user_id)
        assert paging["total"] == 1
        summary = summaries[0]
        assert summary.workspace_name == "Default Workspace"
        assert summary.workspace_color == "#3B82F6"
        assert summary.message_count == 1


class TestSendMessage:
    async def test_empty_message_without_files_rejected(self, chat_service, auth):
        with pytest.raises(BadRequestError) as exc_info:
            await chat_service.send_message(auth, "   ")
        assert exc_info.value.detail == {"error": "Message content or files are required"}

    async def test_new_chat_created_with_message_title(self, chat_service, store, auth, backend):
        exchange = await chat_service.send_message(auth, "What is the capital of France?")
        assert exchange.chat.title == "What is the capital of France?"
        assert exchange.chat.description == "Auto-generated chat"
        assert exchange.chat.message_count == 2
        assert exchange.ai_message.content == "Sure thing."
        assert exchange.ai_message.tokens == 25
        assert [m.role for m in store.list_messages(exchange.chat.id)] == ["user", "assistant"]

        sent = backend.calls[0]
        assert sent[0] == {"role": "system", "content": "You are AIVA."}
        assert sent[-1] == {"role": "user", "content": "What is the capital of France?"}
        assert len(sent) == 2

    async def test_long_message_title_truncated(self, chat_service, auth):
        exchange = await chat_service.send_message(auth, "a" * 150)
        assert exchange.chat.title == "a" * 100

    async def test_history_excludes_new_message(self, chat_service, auth, backend):
        first = await chat_service.send_message(auth, "First question")
        await chat_service.send_message(auth, "Second question", chat_id=first.chat.id)
        sent = backend.calls[1]
        assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
        assert sent[1]["content"] == "First question"
        assert sent[-1]["content"] == "Second question"

    async def test_foreign_chat_not_found(self, chat_service, store, auth):
        other = store.create_user("other@example.com")
        foreign = store.create_chat(other.id, "Private")
        with pytest.raises(NotFoundError, match="Chat not found or access denied"):
            await chat_service.send_message(auth, "hello", chat_id=foreign.id)

    async def test_attached_files_inlined(self, chat_service, blob, auth, backend):
        blob.upload("f1.txt", b"Quarterly numbers look good.")
        files = [
            {
                "originalName": "q3.txt",
                "fileName": "f1.txt",
                "url": "memory://aiva-files/f1.txt",
                "size": 28,
            }
        ]
        exchange = await chat_service.send_message(auth, "Summarize", files=files)
        content = exchange.user_message.content
        assert content.startswith("Summarize\n\nAttached Files:\n")
        assert "File: q3.txt\nContent:\nQuarterly numbers look good." in content
        assert exchange.user_message.metadata["files"][0]["fileName"] == "f1.txt"
        assert backend.calls[0][-1]["content"] == content

    async def test_files_only_message(self, chat_service, blob, auth):
        blob.upload("f2.txt", b"hello")
        files = [
            {"originalName": "a.txt", "url": "memory://aiva-files/f2.txt"},
            {"originalName": "b.txt", "url": "memory://aiva-files/missing.txt"},
        ]
        exchange = await chat_service.send_message(auth, "", files=files)
        assert exchange.chat.title == "File: a.txt and 1 more"
        content = exchange.user_message.content
        assert content.startswith("Analyze the following files:\n\n")
        # Blob name comes from the URL when fileName is absent
        assert "File: a.txt\nContent:\nhello" in content
        assert "[Content not available for file: b.txt]" in content

    async def test_file_without_url_rejected(self, chat_service, auth):
        with pytest.raises(BadRequestError, match="File at index 0 missing url property"):
            await chat_service.send_message(auth, "hi", files=[{"originalName": "a.txt"}])

    async def test_file_without_original_name_rejected(self, chat_service, auth):
        with pytest.raises(BadRequestError, match="missing originalName property"):
            await chat_service.send_message(auth, "hi", files=[{"url": "memory://x/y"}])

    async def test_llm_failure_persists_placeholder(self, store, blob, auth):
        failing = RecordingBackend(error=TimeoutError("Request timed out"))
        llm = LLMService(failing, system_prompt="sys")
        service = ChatService(store, llm, FileAnalysisService(llm, blob))

        with pytest.raises(ServerError) as exc_info:
            await service.send_message(auth, "Are you there?")

        detail = exc_info.value.detail
        assert detail["error"] == "Failed to get AI response"
        assert detail["details"] == "Request timed out"
        assert "taking too long" in detail["hint"]
        messages = store.list_messages(detail["chatId"])
        assert [m.id for m in messages] == [detail["userMessageId"], detail["aiMessageId"]]
        assert messages[1].content == AI_FAILURE_PLACEHOLDER
        assert store.get_chat(detail["chatId"]).message_count == 2

    async def test_unexpected_error_wrapped(self, chat_service, auth, monkeypatch):
        def broken(*args, **kwargs):
            raise KeyError("workspace table missing")

        monkeypatch.setattr(chat_service, "_resolve_message_workspace", broken)
        with pytest.raises(ServerError) as exc_info:
            await chat_service.send_message(auth, "hello")
        assert exc_info.value.detail["error"] == "Failed to process message"

    async def test_llm_failure_details_scrubbed(self, store, blob, auth):
        leaky = RecordingBackend(
            error=RuntimeError(
                "connection to /srv/aiva/secrets failed: api_key=sk-LIVE-123 AccountKey=abc=="
            )
        )
        llm = LLMService(leaky, system_prompt="sys")
        service = ChatService(store, llm, FileAnalysisService(llm, blob))

        with pytest.raises(ServerError) as exc_info:
            await service.send_message(auth, "hello")
        details = exc_info.value.detail["details"]
        assert "sk-LIVE-123" not in details
        assert "/srv/aiva" not in details
        assert "[redacted]" in details

    async def test_attachment_read_off_event_loop(self, store, auth):
        class ThreadRecordingBlob(MemoryBlobStorage):
            def __init__(self):
                super().__init__()
                self.on_main_thread = []

            def download(self, blob_name):
                self.on_main_thread.append(
                    threading.current_thread() is threading.main_thread()
                )
                return super().download(blob_name)

        blob = ThreadRecordingBlob()
        blob.upload("f3.txt", b"threaded")
        llm = LLMService(RecordingBackend(), system_prompt="sys")
        service = ChatService(store, llm, FileAnalysisService(llm, blob))
        files = [{"originalName": "t.txt", "fileName": "f3.txt", "url": "memory://x/f3.txt"}]

        exchange = await service.send_message(auth, "read this", files=files)
        assert "threaded" in exchange.user_message.content
        assert blob.on_main_thread == [False]


class TestSendMessageWorkspace:
    async def test_existing_default_workspace_reused(self, chat_service, store, auth):
        default = chat_service.create_chat(auth, "Seed").workspace_id
        exchange = await chat_service.send_message(auth, "hi")
        assert exchange.chat.workspace_id == default

    async def test_non_uuid_workspace_id_uses_default(self, chat_service, store, auth):
        default = chat_service.create_chat(auth, "Seed").workspace_id
        exchange = await chat_service.send_message(auth, "hi", workspace_id="not-a-uuid")
        assert exchange.chat.workspace_id == default
        assert len(store.list_owned_workspaces(auth.user_id)) == 1

    async def test_foreign_workspace_replaced_by_new_default(self, chat_service, store, auth):
        default = chat_service.create_chat(auth, "Seed").workspace_id
        other = store.create_user("owner@example.com")
        foreign = store.create_workspace(other.id, "Someone else's")

        exchange = await chat_service.send_message(auth, "hi", workspace_id=foreign.id)

        landed = store.get_workspace(exchange.chat.workspace_id)
        assert landed.id not in (foreign.id, default)
        assert landed.owner_id == auth.user_id
        assert landed.name == "Default Workspace"
        assert store.count_active_chats(foreign.id) == 0

    async def test_owned_workspace_honoured(self, chat_service, store, auth):
        mine = store.create_workspace(auth.user_id, "Projects")
        exchange = await chat_service.send_message(auth, "hi", workspace_id=mine.id)
        assert exchange.chat.workspace_id == mine.id


class TestMessageActionsToggle:
    async def test_toggle_flips_state(self, chat_service, auth):
        exchange = await chat_service.send_message(auth, "hello")
        args = (exchange.chat.id, exchange.ai_message.id, auth.user_id)
        assert chat_service.toggle_message_action(*args, "like") is True
        assert chat_service.toggle_message_action(*args, "like") is False

    async def test_toggle_rejects_unknown_type(self, chat_service, auth):
        exchange = await chat_service.send_message(auth, "hello")
        with pytest.raises(BadRequestError, match="Action type must be one of"):
            chat_service.toggle_message_action(
                exchange.chat.id, exchange.ai_message.id, auth.user_id, "love"
            )

    async def test_toggle_requires_matching_chat(self, chat_service, auth):
        first = await chat_service.send_message(auth, "one")
        second = await chat_service.send_message(auth, "two")
        with pytest.raises(NotFoundError):
            chat_service.toggle_message_action(
                second.chat.id, first.ai_message.id, auth.user_id, "star"
            )


class TestHistory:
    async def test_history_has_last_message(self, chat_service, auth):
        exchange = await chat_service.send_message(auth, "hello")
        entries = chat_service.history(auth.user_id)
        assert len(entries) == 1
        chat, last = entries[0]
        assert chat.id == exchange.chat.id
        assert last.id == exchange.ai_message.id

    async def test_archived_chat_history_still_readable(self, chat_service, auth):
        exchange = await chat_service.send_message(auth, "hello")
        chat_service.archive_chat(exchange.chat.id, auth.user_id)
        assert chat_service.history(auth.user_id) == []
        chat, messages = chat_service.chat_history(exchange.chat.id, auth.user_id)
        assert chat.is_archived
        assert len(messages) == 2
