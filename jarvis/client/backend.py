"""HTTP client for the remote chat backend.

Implements the ConversationStore contract against the backend's REST
routes, plus the summarization route used in remote mode. The backend
saves both sides of an exchange itself, so messages are only ever written
through stream_reply():

    GET    /api/chats                       list conversations
    POST   /api/chats                       create a conversation
    GET    /api/chats/{id}/messages         fetch messages
    POST   /api/chats/{id}/messages         send a message, stream the reply (NDJSON)
    DELETE /api/chats/{id}                  delete a conversation
    GET    /api/chats/{id}/context          fetch context snapshot
    PUT    /api/chats/{id}/context          save context snapshot
    POST   /api/summarize-with-ollama       one-shot summary
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx
import structlog

from jarvis.client.auth import AuthSession
from jarvis.core.errors import NotFoundError, TransportError
from jarvis.core.persistence import ConversationStore
from jarvis.core.types import (
    ContextSnapshot,
    ConversationRecord,
    ModelResponse,
    Role,
    StoredMessage,
    Turn,
)

logger = structlog.get_logger()


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


class BackendClient(ConversationStore):
    """Remote conversation store and model gateway."""

    persists_replies = True

    def __init__(self, auth: AuthSession) -> None:
        self._auth = auth

    async def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._auth.request(method, path, **kwargs)
        if response.status_code == 404:
            raise NotFoundError(_error_detail(response), status_code=404)
        if not response.is_success:
            raise TransportError(
                f"Server responded with {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Server returned invalid JSON", details=str(e)) from e
        return data if isinstance(data, dict) else {}

    # --- ConversationStore ---

    async def list_conversations(self) -> list[ConversationRecord]:
        data = await self._json("GET", "/api/chats")
        return [_record(c) for c in data.get("chats", []) if isinstance(c, dict)]

    async def create_conversation(self, title: str) -> ConversationRecord:
        data = await self._json("POST", "/api/chats", json={"title": title})
        chat = data.get("chat")
        if not isinstance(chat, dict) or not chat.get("chat_id"):
            raise TransportError("Server did not return a chat id")
        return _record(chat)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        for record in await self.list_conversations():
            if record.id == conversation_id:
                return record
        raise NotFoundError("Chat not found or access denied.", details=conversation_id)

    async def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        data = await self._json("GET", f"/api/chats/{conversation_id}/messages")
        messages: list[StoredMessage] = []
        for raw in data.get("messages", []):
            if not isinstance(raw, dict):
                continue
            try:
                role = Role(raw.get("role"))
            except ValueError:
                continue
            content = raw.get("content")
            if not isinstance(content, str):
                continue
            messages.append(StoredMessage(
                role=role,
                content=content,
                sent_at=_parse_time(raw.get("timestamp") or raw.get("sent_at")),
            ))
        return messages

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            await self._json("DELETE", f"/api/chats/{conversation_id}")
        except NotFoundError:
            return False
        return True

    async def get_context(self, conversation_id: str) -> ContextSnapshot | None:
        data = await self._json("GET", f"/api/chats/{conversation_id}/context")
        context = data.get("context")
        if not isinstance(context, dict) or not context:
            return None
        return ContextSnapshot.from_dict(context)

    async def put_context(self, conversation_id: str, snapshot: ContextSnapshot) -> None:
        await self._json(
            "PUT", f"/api/chats/{conversation_id}/context", json={"context": snapshot.to_dict()}
        )

    async def close(self) -> None:
        await self._auth.close()

    # --- Replies and summaries ---

    async def stream_reply(self, conversation_id: str, content: str) -> AsyncIterator[str]:
        """Send a user message and yield raw NDJSON lines of the reply.

        The backend saves the user message, runs its own web lookup and
        saves the finished reply with the assistant sender id. Lines are
        parsed by the consumer so a malformed line can be skipped without
        ending the stream.
        """
        async with self._auth.stream(
            "POST", f"/api/chats/{conversation_id}/messages", json={"content": content}
        ) as response:
            if not response.is_success:
                await response.aread()
                error = NotFoundError if response.status_code == 404 else TransportError
                raise error(
                    f"Server responded with {response.status_code}: {_error_detail(response)}",
                    status_code=response.status_code,
                )
            try:
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
            except httpx.HTTPError as e:
                raise TransportError(f"Stream read failed: {e}", details=str(e)) from e

    async def complete(self, messages: Sequence[Turn | dict[str, Any]], **_: Any) -> ModelResponse:
        """Run a one-shot summarization request."""
        payload = [t.to_litellm() if isinstance(t, Turn) else dict(t) for t in messages]
        data = await self._json("POST", "/api/summarize-with-ollama", json={"messages": payload})
        if not data.get("success"):
            raise TransportError(str(data.get("error") or "No summary received from server"))
        return ModelResponse(content=data.get("summary"), model="remote")


def _record(raw: dict[str, Any]) -> ConversationRecord:
    return ConversationRecord(
        id=str(raw.get("chat_id") or raw.get("id")),
        title=str(raw.get("title") or "Untitled"),
        created_at=_parse_time(raw.get("created_at")) or datetime.now(timezone.utc),
        updated_at=_parse_time(raw.get("updated_at")),
    )
