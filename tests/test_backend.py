"""Tests for the remote backend client and its authenticated session."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from jarvis.client.auth import AuthSession
from jarvis.client.backend import BackendClient
from jarvis.core.errors import AuthFailure, NotFoundError, TransportError
from jarvis.core.types import ContextSnapshot, Role, StoredMessage, StreamChunk


# === Shared helpers ===

class Recorder:
    """MockTransport handler that records requests and serves canned routes."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": "no route"})
        return self.routes[key]

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def _wire(**fields) -> str:
    return json.dumps(fields)


def _client(routes, token="tok", on_auth_failure=None):
    recorder = Recorder(routes)
    auth = AuthSession(
        "http://backend.test",
        token=token,
        on_auth_failure=on_auth_failure,
        transport=httpx.MockTransport(recorder),
    )
    return BackendClient(auth), auth, recorder


# =============================================================
# Conversation routes
# =============================================================

class TestBackendConversations:
    """Tests for the REST conversation routes."""

    @pytest.mark.asyncio
    async def test_list_sends_bearer_token(self):
        client, _, recorder = _client({
            ("GET", "/api/chats"): httpx.Response(200, json={"chats": [
                {"chat_id": "c1", "title": "Hello", "created_at": "2024-01-01T00:00:00Z"},
                "junk",
            ]}),
        })

        records = await client.list_conversations()

        assert [(r.id, r.title) for r in records] == [("c1", "Hello")]
        assert records[0].created_at.year == 2024
        assert recorder.requests[0].headers["Authorization"] == "Bearer tok"
        await client.close()

    @pytest.mark.asyncio
    async def test_create(self):
        client, _, recorder = _client({
            ("POST", "/api/chats"): httpx.Response(201, json={
                "success": True, "chat": {"chat_id": "c9", "title": "Plan a trip"},
            }),
        })

        record = await client.create_conversation("Plan a trip")

        assert record.id == "c9"
        assert recorder.body() == {"title": "Plan a trip"}
        await client.close()

    @pytest.mark.asyncio
    async def test_create_without_id(self):
        client, _, _ = _client({
            ("POST", "/api/chats"): httpx.Response(201, json={"success": True}),
        })
        with pytest.raises(TransportError):
            await client.create_conversation("x")
        await client.close()

    @pytest.mark.asyncio
    async def test_get_conversation_not_listed(self):
        client, _, _ = _client({("GET", "/api/chats"): httpx.Response(200, json={"chats": []})})
        with pytest.raises(NotFoundError):
            await client.get_conversation("c1")
        await client.close()

    @pytest.mark.asyncio
    async def test_get_messages_skips_malformed(self):
        client, _, _ = _client({
            ("GET", "/api/chats/c1/messages"): httpx.Response(200, json={"messages": [
                {"role": "user", "content": "hi", "timestamp": "2024-01-01T10:00:00Z"},
                {"role": "assistant", "content": "hello"},
                {"role": "robot", "content": "??"},
                {"role": "user", "content": 42},
            ]}),
        })

        messages = await client.get_messages("c1")

        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "hi"), (Role.ASSISTANT, "hello"),
        ]
        assert messages[0].sent_at is not None
        await client.close()

    @pytest.mark.asyncio
    async def test_get_messages_not_found(self):
        client, _, _ = _client({
            ("GET", "/api/chats/c1/messages"): httpx.Response(
                404, json={"message": "Chat not found or access denied."},
            ),
        })
        with pytest.raises(NotFoundError) as exc_info:
            await client.get_messages("c1")
        assert exc_info.value.status_code == 404
        await client.close()

    @pytest.mark.asyncio
    async def test_server_error(self):
        client, _, _ = _client({
            ("GET", "/api/chats"): httpx.Response(500, json={"message": "Server error"}),
        })
        with pytest.raises(TransportError) as exc_info:
            await client.list_conversations()
        assert exc_info.value.status_code == 500
        assert "Server error" in exc_info.value.message
        await client.close()

    @pytest.mark.asyncio
    async def test_no_standalone_append(self):
        client, _, recorder = _client({})
        assert client.persists_replies is True
        with pytest.raises(NotImplementedError):
            await client.append_messages("c1", [StoredMessage(role=Role.USER, content="hi")])
        assert recorder.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_delete(self):
        client, _, _ = _client({
            ("DELETE", "/api/chats/c1"): httpx.Response(200, json={"success": True}),
        })
        assert await client.delete_conversation("c1") is True
        assert await client.delete_conversation("c2") is False
        await client.close()

    @pytest.mark.asyncio
    async def test_context_round_trip(self):
        client, _, recorder = _client({
            ("GET", "/api/chats/c1/context"): httpx.Response(200, json={"success": True, "context": {
                "runningSummary": "They planned a trip.",
                "messagesSinceLastSummary": 3,
                "totalMessagesProcessed": 15,
                "lastUpdated": "2024-03-01T12:00:00Z",
            }}),
            ("GET", "/api/chats/c2/context"): httpx.Response(200, json={"success": True, "context": {}}),
            ("PUT", "/api/chats/c1/context"): httpx.Response(200, json={"success": True}),
        })

        snapshot = await client.get_context("c1")
        assert snapshot.summary == "They planned a trip."
        assert snapshot.turns_since_last_summary == 3
        assert snapshot.total_turns_processed == 15
        assert await client.get_context("c2") is None

        await client.put_context("c1", ContextSnapshot(summary="S", total_turns_processed=4))
        assert recorder.body()["context"]["runningSummary"] == "S"
        assert recorder.body()["context"]["totalMessagesProcessed"] == 4
        await client.close()


# =============================================================
# Reply and summary routes
# =============================================================

class TestBackendReplyRoutes:
    """Tests for the message send stream and summarization routes."""

    @pytest.mark.asyncio
    async def test_stream_reply_yields_lines(self):
        body = "\n".join([
            _wire(success=True, ollamaResponseChunk="Hel"),
            "",
            _wire(success=True, ollamaResponseChunk="lo"),
        ]) + "\n"
        client, _, recorder = _client({
            ("POST", "/api/chats/c1/messages"): httpx.Response(200, content=body.encode()),
        })

        lines = [line async for line in client.stream_reply("c1", "hi")]

        assert [StreamChunk.parse(line).delta_text for line in lines] == ["Hel", "lo"]
        assert recorder.body() == {"content": "hi"}
        await client.close()

    @pytest.mark.asyncio
    async def test_stream_reply_rejected(self):
        client, _, _ = _client({
            ("POST", "/api/chats/c1/messages"): httpx.Response(
                400, json={"message": "Message content is required."},
            ),
        })
        with pytest.raises(TransportError) as exc_info:
            async for _ in client.stream_reply("c1", ""):
                pass
        assert exc_info.value.status_code == 400
        assert "Message content is required." in exc_info.value.message
        await client.close()

    @pytest.mark.asyncio
    async def test_stream_reply_unknown_chat(self):
        client, _, _ = _client({})
        with pytest.raises(NotFoundError):
            async for _ in client.stream_reply("gone", "hi"):
                pass
        await client.close()

    @pytest.mark.asyncio
    async def test_complete(self):
        client, _, recorder = _client({
            ("POST", "/api/summarize-with-ollama"): httpx.Response(
                200, json={"success": True, "summary": "Short summary."},
            ),
        })

        response = await client.complete(
            messages=[{"role": "user", "content": "x"}], temperature=0.5,
        )

        assert response.content == "Short summary."
        assert recorder.body() == {"messages": [{"role": "user", "content": "x"}]}
        await client.close()

    @pytest.mark.asyncio
    async def test_complete_failure(self):
        client, _, _ = _client({
            ("POST", "/api/summarize-with-ollama"): httpx.Response(
                200, json={"success": False, "error": "No summary received from Ollama"},
            ),
        })
        with pytest.raises(TransportError):
            await client.complete(messages=[])
        await client.close()


# =============================================================
# Auth session
# =============================================================

class TestAuthSession:
    """Tests for token handling and auth failures."""

    @pytest.mark.asyncio
    async def test_no_token_no_header(self):
        client, _, recorder = _client(
            {("GET", "/api/chats"): httpx.Response(200, json={"chats": []})}, token=None,
        )
        await client.list_conversations()
        assert "Authorization" not in recorder.requests[0].headers
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure_clears_token_and_notifies(self, status):
        calls = []

        def callback() -> None:
            calls.append(True)

        client, auth, _ = _client(
            {("GET", "/api/chats"): httpx.Response(status, json={"message": "Token expired"})},
            on_auth_failure=callback,
        )

        with pytest.raises(AuthFailure) as exc_info:
            await client.list_conversations()

        assert exc_info.value.status_code == status
        assert calls == [True]
        assert auth.token is None
        await client.close()

    @pytest.mark.asyncio
    async def test_async_auth_callback_awaited(self):
        callback = AsyncMock()
        client, _, _ = _client(
            {("POST", "/api/chats/c1/messages"): httpx.Response(401, json={})},
            on_auth_failure=callback,
        )

        with pytest.raises(AuthFailure):
            async for _ in client.stream_reply("c1", "hi"):
                pass

        callback.assert_awaited_once()
        await client.close()

    @pytest.mark.asyncio
    async def test_network_error(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with AuthSession(
            "http://backend.test", transport=httpx.MockTransport(refuse),
        ) as auth:
            with pytest.raises(TransportError) as exc_info:
                await auth.request("GET", "/api/chats")
        assert "connection refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_set_token(self):
        client, auth, recorder = _client(
            {("GET", "/api/chats"): httpx.Response(200, json={"chats": []})}, token=None,
        )
        auth.set_token("fresh")
        await client.list_conversations()
        assert recorder.requests[0].headers["Authorization"] == "Bearer fresh"
        await client.close()
