"""Integration tests for chat, message and history routes."""

import pytest

from aiva.service.llm import ChatCompletionResult
from aiva.service.runtime import get_runtime


@pytest.fixture
def user_headers(signup):
    return signup("chatter@example.com")[1]


def _send(client, headers, **body):
    return client.post("/api/chat/message", json=body, headers=headers)


class TestChatCrud:
    def test_requires_auth(self, client):
        assert client.get("/api/chat").status_code == 401

    def test_create_and_list(self, client, user_headers):
        response = client.post(
            "/api/chat", json={"title": "Planning", "description": "Q4"}, headers=user_headers
        )
        assert response.status_code == 201
        chat = response.json()["data"]["chat"]
        assert chat["title"] == "Planning"
        assert chat["workspaceId"]

        listing = client.get("/api/chat", headers=user_headers).json()["data"]
        assert listing["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
        listed = listing["chats"][0]
        assert listed["id"] == chat["id"]
        assert listed["workspaceName"] == "Default Workspace"
        assert listed["messageCount"] == 0

    def test_create_requires_title(self, client, user_headers):
        response = client.post("/api/chat", json={"title": ""}, headers=user_headers)
        assert response.status_code == 400

    def test_invalid_sort_rejected(self, client, user_headers):
        response = client.get("/api/chat?sortBy=owner", headers=user_headers)
        assert response.status_code == 400
        response = client.get("/api/chat?sortOrder=sideways", headers=user_headers)
        assert response.status_code == 400

    def test_pagination(self, client, user_headers):
        for i in range(3):
            client.post("/api/chat", json={"title": f"Chat {i}"}, headers=user_headers)
        data = client.get(
            "/api/chat?page=2&limit=2&sortBy=title&sortOrder=asc", headers=user_headers
        ).json()["data"]
        assert [c["title"] for c in data["chats"]] == ["Chat 2"]
        assert data["pagination"]["pages"] == 2

    def test_chats_isolated_between_users(self, client, signup, user_headers):
        client.post("/api/chat", json={"title": "Mine"}, headers=user_headers)
        _, other_headers = signup("other@example.com")
        assert client.get("/api/chat", headers=other_headers).json()["data"]["chats"] == []

    def test_archive_chat(self, client, user_headers):
        chat_id = client.post(
            "/api/chat", json={"title": "Old"}, headers=user_headers
        ).json()["data"]["chat"]["id"]
        response = client.delete(f"/api/chat/{chat_id}", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Chat archived successfully"
        assert client.get("/api/chat", headers=user_headers).json()["data"]["chats"] == []

    def test_archive_unknown_chat(self, client, user_headers):
        response = client.delete("/api/chat/not-a-uuid", headers=user_headers)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Chat not found or access denied"


class TestSendMessage:
    def test_message_creates_chat_and_reply(self, client, user_headers):
        response = _send(client, user_headers, message="Hello AIVA")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Message processed successfully"
        assert data["userMessage"]["content"] == "Hello AIVA"
        assert data["userMessage"]["role"] == "user"
        assert data["aiResponse"]["content"] == "[echo] Hello AIVA"
        assert data["aiResponse"]["role"] == "assistant"
        assert data["aiResponse"]["timestamp"]

        messages = client.get(
            f"/api/chat/{data['chatId']}/messages", headers=user_headers
        ).json()["data"]
        assert [m["role"] for m in messages["messages"]] == ["user", "assistant"]
        assert messages["messages"][1]["likeCount"] == 0
        assert messages["pagination"]["total"] == 2

    def test_continue_existing_chat(self, client, user_headers):
        first = _send(client, user_headers, message="One").json()["data"]
        second = _send(client, user_headers, message="Two", chatId=first["chatId"])
        assert second.json()["data"]["chatId"] == first["chatId"]
        chats = client.get("/api/chat", headers=user_headers).json()["data"]["chats"]
        assert len(chats) == 1
        assert chats[0]["messageCount"] == 4

    def test_empty_message_rejected(self, client, user_headers):
        response = _send(client, user_headers, message="  ")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "Please provide a message or attach files to send"
        assert error["details"] == {"error": "Message content or files are required"}

    def test_other_users_chat_not_found(self, client, signup, user_headers):
        chat_id = _send(client, user_headers, message="private").json()["data"]["chatId"]
        _, other_headers = signup("intruder@example.com")
        response = _send(client, other_headers, message="hi", chatId=chat_id)
        assert response.status_code == 404
        response = client.get(f"/api/chat/{chat_id}/messages", headers=other_headers)
        assert response.status_code == 404

    def test_workspace_id_honoured_when_owned(self, client, signup):
        _, admin_headers = signup("boss@example.com", role="admin")
        workspace_id = client.post(
            "/api/workspaces", json={"name": "Ops"}, headers=admin_headers
        ).json()["data"]["workspace"]["id"]
        chat_id = _send(
            client, admin_headers, message="hi", workspaceId=workspace_id
        ).json()["data"]["chatId"]
        chat = get_runtime().store.get_chat(chat_id)
        assert chat.workspace_id == workspace_id

    def test_llm_failure_returns_500_with_ids(self, client, user_headers):
        class FailingBackend:
            mode = "failing"

            def complete(self, messages, *, max_tokens, temperature):
                raise RuntimeError("upstream model unavailable")

        get_runtime().llm.backend = FailingBackend()
        response = _send(client, user_headers, message="Anyone home?")
        assert response.status_code == 500
        details = response.json()["error"]["details"]
        assert details["error"] == "Failed to get AI response"
        messages = get_runtime().store.list_messages(details["chatId"])
        assert [m.id for m in messages] == [details["userMessageId"], details["aiMessageId"]]

    def test_llm_failure_body_has_no_secrets(self, client, user_headers):
        class LeakyBackend:
            mode = "leaky"

            def complete(self, messages, *, max_tokens, temperature):
                raise RuntimeError(
                    "connection to /srv/aiva/secrets failed: api_key=sk-LIVE-123 AccountKey=abc=="
                )

        get_runtime().llm.backend = LeakyBackend()
        response = _send(client, user_headers, message="Anyone home?")
        assert response.status_code == 500
        assert "sk-LIVE-123" not in response.text
        assert "/srv/aiva" not in response.text

    def test_envelope_shape(self, client, user_headers):
        ok = _send(client, user_headers, message="shape check").json()
        assert set(ok) == {"status", "data", "error", "request_id"}
        assert ok["status"] == "ok"
        assert ok["error"] is None
        assert ok["data"]["chatId"]
        assert ok["data"]["message"] == "Message processed successfully"

        failed = _send(client, user_headers, message=" ").json()
        assert failed["status"] == "error"
        assert failed["data"] is None
        assert failed["error"]["code"] == "validation_error"
        assert failed["error"]["message"] == "Please provide a message or attach files to send"
        assert failed["request_id"]

    def test_chat_rate_limit(self, client, user_headers, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "chat_rate_limit_per_minute", 1)
        assert _send(client, user_headers, message="first").status_code == 200
        limited = _send(client, user_headers, message="second")
        assert limited.status_code == 429
        assert limited.headers["X-RateLimit-Limit"] == "1"

    def test_successful_response_has_rate_limit_headers(self, client, user_headers):
        response = _send(client, user_headers, message="headers please")
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert int(response.headers["X-RateLimit-Remaining"]) == 999


class TestToggleActions:
    def test_toggle_like(self, client, user_headers):
        data = _send(client, user_headers, message="rate me").json()["data"]
        url = f"/api/chat/{data['chatId']}/messages/{data['aiResponse']['id']}/actions"
        first = client.post(url, json={"actionType": "like"}, headers=user_headers)
        assert first.json()["data"] == {
            "message": "Action added",
            "actionType": "like",
            "active": True,
        }
        second = client.post(url, json={"actionType": "like"}, headers=user_headers)
        assert second.json()["data"]["active"] is False

    def test_toggle_invalid_type(self, client, user_headers):
        data = _send(client, user_headers, message="rate me").json()["data"]
        url = f"/api/chat/{data['chatId']}/messages/{data['aiResponse']['id']}/actions"
        response = client.post(url, json={"actionType": "love"}, headers=user_headers)
        assert response.status_code == 400


class TestHistory:
    def test_history_lists_recent_chats(self, client, user_headers):
        _send(client, user_headers, message="first chat")
        _send(client, user_headers, message="second chat")
        chats = client.get("/api/history", headers=user_headers).json()["data"]["chats"]
        assert len(chats) == 2
        assert {c["lastMessageRole"] for c in chats} == {"assistant"}
        assert {c["lastMessage"] for c in chats} == {"[echo] first chat", "[echo] second chat"}

    def test_history_detail(self, client, user_headers):
        chat_id = _send(client, user_headers, message="remember").json()["data"]["chatId"]
        data = client.get(f"/api/history/{chat_id}", headers=user_headers).json()["data"]
        assert data["chat"]["id"] == chat_id
        assert [m["content"] for m in data["messages"]] == ["remember", "[echo] remember"]

    def test_history_detail_not_found(self, client, user_headers):
        response = client.get(
            "/api/history/8a2b3c4d-0000-4000-8000-000000000000", headers=user_headers
        )
        assert response.status_code == 404


def test_completion_result_total_tokens():
    assert ChatCompletionResult(content="x", usage={"total_tokens": 9}).total_tokens == 9
    assert ChatCompletionResult(content="x").total_tokens == 0
