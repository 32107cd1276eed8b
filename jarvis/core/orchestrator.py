"""Chat orchestrator: session state machine for one chat window.

Owns the current conversation id, the visible message list and the
loading/streaming state, and drives the context manager:

1. select_conversation() loads a conversation's history and context,
   discarding results from loads that were superseded by a newer selection.
2. send_message() creates the conversation lazily, appends the user turn
   optimistically, streams the assistant reply into a placeholder slot,
   then persists the reply and the context snapshot.

Every collaborator call is a suspension point. Each state commit after one
is guarded by an epoch comparison, so a conversation switch only changes
which *future* results are applied; in-flight calls finish and are ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from jarvis.config import ContextConfig, JarvisConfig
from jarvis.core.errors import (
    AuthFailure,
    NotFoundError,
    StreamInterruptedError,
    TransportError,
    ValidationError,
)
from jarvis.core.memory.manager import ContextManager
from jarvis.core.persistence import ConversationStore
from jarvis.core.types import (
    ASSISTANT_SENDER_ID,
    NO_RESPONSE_TEXT,
    PLACEHOLDER_TEXT,
    ConversationRecord,
    DisplayMessage,
    Role,
    SessionStatus,
    StoredMessage,
    StreamChunk,
    Turn,
)
from jarvis.tools.web_search import ANSWER_TEMPLATE, WebSearch

logger = structlog.get_logger()

NEW_CHAT_TITLE = "New Chat"
DEFAULT_CONVERSATION_TITLE = "New Conversation"
TITLE_LENGTH = 50
SESSION_EXPIRED = "Your session has expired. Please log in again."
NOT_FOUND = "Chat not found or access denied"


@dataclass
class ConversationSession:
    """What the chat window currently shows."""

    conversation_id: str | None = None
    turns: list[DisplayMessage] = field(default_factory=list)
    status: SessionStatus = SessionStatus.IDLE
    title: str = NEW_CHAT_TITLE
    error: str | None = None
    refresh_counter: int = 0  # Bumped when the conversation list should refresh

    @property
    def is_busy(self) -> bool:
        return self.status in (
            SessionStatus.CREATING, SessionStatus.LOADING, SessionStatus.STREAMING,
        )


class ChatCallback:
    """Optional observer for session changes.

    UI implementations override this to re-render. Errors raised here are
    logged and never break the chat flow.
    """

    async def on_session_changed(self, session: ConversationSession) -> None:
        pass

    async def on_stream_delta(self, session: ConversationSession, index: int, delta: str) -> None:
        pass


class ChatOrchestrator:
    """Session-level state machine for conversations and streamed replies."""

    def __init__(
        self,
        store: ConversationStore,
        model: Any,
        summarizer: Any = None,
        search: WebSearch | None = None,
        config: JarvisConfig | None = None,
        callback: ChatCallback | None = None,
        user_id: str = "local",
        context_factory: Callable[[], ContextManager] | None = None,
    ) -> None:
        self.config = config or JarvisConfig()
        self.store = store
        self.model = model
        self.search = search
        self.callback = callback or ChatCallback()
        self.user_id = user_id
        self._summarizer = summarizer
        self._context_factory = context_factory

        self.session = ConversationSession()
        self.context = self._new_context()

        self._epoch = 0
        self._loading_id: str | None = None
        self._creating = False
        # Id created by the send in flight; navigation to it must not reload
        self._fresh_id: str | None = None
        self._streaming_index: int | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def _new_context(self) -> ContextManager:
        if self._context_factory:
            return self._context_factory()
        context_cfg: ContextConfig = self.config.context
        return ContextManager(summarizer=self._summarizer, config=context_cfg)

    @property
    def conversation_id(self) -> str | None:
        return self.session.conversation_id

    @property
    def turns(self) -> list[DisplayMessage]:
        return self.session.turns

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    # --- Notifications ---

    async def _notify(self) -> None:
        try:
            await self.callback.on_session_changed(self.session)
        except Exception as e:
            logger.warning("chat_callback_error", error=str(e))

    async def _notify_delta(self, index: int, delta: str) -> None:
        try:
            await self.callback.on_stream_delta(self.session, index, delta)
        except Exception as e:
            logger.warning("chat_callback_error", error=str(e))

    # --- Conversation selection ---

    async def select_conversation(self, conversation_id: str | None) -> None:
        """Switch the window to ``conversation_id``, or to a fresh chat if None."""
        if conversation_id is None:
            if self._creating:
                logger.debug("select_skipped", reason="creating")
                return
            await self._reset_session()
            return

        if conversation_id == self._loading_id:
            logger.debug("select_skipped", reason="already_loading", conversation_id=conversation_id)
            return
        if conversation_id == self._fresh_id:
            logger.debug("select_skipped", reason="freshly_created", conversation_id=conversation_id)
            return
        if (
            conversation_id == self.session.conversation_id
            and self.session.status != SessionStatus.ERROR
        ):
            logger.debug("select_skipped", reason="already_selected", conversation_id=conversation_id)
            return

        await self._load(conversation_id)

    async def clear_current_chat(self) -> None:
        """Drop the current selection and start a fresh, unsaved chat."""
        await self.select_conversation(None)

    async def _reset_session(self) -> None:
        self._epoch += 1
        self._loading_id = None
        self._fresh_id = None
        self._streaming_index = None
        self.context = self._new_context()

        s = self.session
        s.conversation_id = None
        s.turns = []
        s.status = SessionStatus.IDLE
        s.title = NEW_CHAT_TITLE
        s.error = None
        logger.info("chat_session_reset")
        await self._notify()

    async def _load(self, conversation_id: str) -> None:
        self._epoch += 1
        epoch = self._epoch
        self._loading_id = conversation_id
        self._fresh_id = None
        self._streaming_index = None
        context = self._new_context()
        self.context = context

        s = self.session
        s.conversation_id = conversation_id
        s.turns = []
        s.status = SessionStatus.LOADING
        s.title = f"Chat {conversation_id[:8]}..."
        s.error = None
        await self._notify()

        logger.info("chat_loading", conversation_id=conversation_id)
        try:
            record = await self.store.get_conversation(conversation_id)
            messages = await self.store.get_messages(conversation_id)
            if epoch != self._epoch:
                logger.debug("chat_load_discarded", conversation_id=conversation_id)
                return

            s.title = record.title or s.title
            s.turns = [m.to_display() for m in messages]

            snapshot = None
            try:
                snapshot = await self.store.get_context(conversation_id)
            except AuthFailure:
                raise
            except TransportError as e:
                logger.warning("context_load_failed", conversation_id=conversation_id, error=e.message)
            if epoch != self._epoch:
                logger.debug("chat_load_discarded", conversation_id=conversation_id)
                return

            context.import_from_messages(messages)
            restored = bool(snapshot and snapshot.summary)
            if restored:
                context.import_snapshot(snapshot)

            s.status = SessionStatus.IDLE
            s.refresh_counter += 1
            logger.info(
                "chat_loaded",
                conversation_id=conversation_id,
                messages=len(messages),
                context_restored=restored,
            )
        except NotFoundError:
            if epoch == self._epoch:
                logger.warning("chat_not_found", conversation_id=conversation_id)
                self._fail_load(NOT_FOUND)
                s.conversation_id = None
                s.title = NEW_CHAT_TITLE
        except AuthFailure:
            if epoch == self._epoch:
                self._fail_load(SESSION_EXPIRED)
        except TransportError as e:
            if epoch == self._epoch:
                logger.warning("chat_load_failed", conversation_id=conversation_id, error=e.message)
                self._fail_load(
                    f"Failed to connect to server or load chat history. ({e.message})"
                )
        finally:
            if epoch == self._epoch:
                self._loading_id = None
                await self._notify()

    def _fail_load(self, message: str) -> None:
        s = self.session
        s.error = message
        s.turns = []
        s.status = SessionStatus.ERROR

    # --- Sending ---

    async def send_message(self, text: str) -> bool:
        """Send a user message and stream the assistant reply.

        Returns False when the message was rejected (empty, or the session
        is busy) without touching any state; True once the send has run,
        whatever its outcome. Failures end up as ERROR rows in the log.
        """
        content = text.strip() if isinstance(text, str) else ""
        if not content:
            logger.debug("send_rejected", reason="empty")
            return False
        if self.session.is_busy:
            logger.info("send_rejected", reason="busy", status=self.session.status.value)
            return False

        epoch = self._epoch
        s = self.session
        conversation_id = s.conversation_id
        context = self.context

        def live() -> bool:
            return epoch == self._epoch

        if conversation_id is None:
            record = await self._create_conversation(content, live)
            if record is None:
                return True
            conversation_id = record.id

        now = datetime.now(timezone.utc)
        if live():
            s.turns.append(DisplayMessage(role=Role.USER, content=content, created_at=now))
            s.turns.append(DisplayMessage(role=Role.ASSISTANT, content=PLACEHOLDER_TEXT, pending=True))
            self._streaming_index = len(s.turns) - 1
            s.status = SessionStatus.STREAMING
            s.error = None
        context.add_turn(Turn(role=Role.USER, content=content, created_at=now))
        await self._notify()

        try:
            if self.store.persists_replies:
                # The store saves both messages and runs its own web lookup
                stream = self.store.stream_reply(conversation_id, content)
            else:
                await self._persist(conversation_id, [StoredMessage(
                    role=Role.USER, content=content, sender_id=self.user_id, sent_at=now,
                )])
                outbound = await self._build_outbound(context, content)
                stream = self.model.stream_chat(outbound)
            await self._stream_reply(conversation_id, context, stream, live)
        except StreamInterruptedError as e:
            if live():
                self._replace_placeholder(
                    f"Server Stream Error: {e.message}. Details: {e.details}"
                )
        except AuthFailure as e:
            logger.warning("send_auth_failed", conversation_id=conversation_id)
            if live():
                s.error = SESSION_EXPIRED
                self._replace_placeholder(f"Authentication failed. ({e.message})")
        except Exception as e:
            logger.warning("send_failed", conversation_id=conversation_id, error=str(e))
            if live():
                detail = e.message if isinstance(e, TransportError) else str(e)
                self._replace_placeholder(f"Network error: Failed to get response. ({detail})")
        finally:
            if self._fresh_id == conversation_id and not self._creating:
                self._fresh_id = None
            if live():
                self._settle_placeholder()
                self._streaming_index = None
                s.status = SessionStatus.IDLE
                await self._notify()
        return True

    async def _create_conversation(
        self, content: str, live: Callable[[], bool]
    ) -> ConversationRecord | None:
        s = self.session
        self._creating = True
        s.status = SessionStatus.CREATING
        s.error = None
        await self._notify()

        title = content[:TITLE_LENGTH] or DEFAULT_CONVERSATION_TITLE
        try:
            record = await self.store.create_conversation(title)
        except TransportError as e:
            logger.warning("chat_create_failed", error=e.message)
            if live():
                s.turns.append(DisplayMessage(
                    role=Role.ERROR, content=f"Failed to start new chat: {e.message}",
                ))
                s.status = SessionStatus.IDLE
                if isinstance(e, AuthFailure):
                    s.error = SESSION_EXPIRED
                await self._notify()
            return None
        finally:
            self._creating = False

        if live():
            self._fresh_id = record.id
            s.conversation_id = record.id
            s.title = record.title or title
        logger.info("chat_created", conversation_id=record.id)
        return record

    async def _build_outbound(self, context: ContextManager, content: str) -> list[Turn]:
        outbound = context.build_outbound_context()
        if self.search is None or not self.search.needs_lookup(content):
            return outbound

        try:
            answer = await self.search.search(content)
        except Exception as e:
            logger.warning("web_search_failed", error=str(e))
            answer = None
        if answer:
            outbound.append(Turn(role=Role.SYSTEM, content=ANSWER_TEMPLATE.format(answer=answer)))
        return outbound

    async def _stream_reply(
        self,
        conversation_id: str,
        context: ContextManager,
        stream: AsyncIterator[Any],
        live: Callable[[], bool],
    ) -> None:
        parts: list[str] = []
        error_chunk: StreamChunk | None = None

        try:
            async for item in stream:
                try:
                    chunk = StreamChunk.parse(item)
                except ValidationError as e:
                    logger.warning("stream_chunk_malformed", error=e.message, details=e.details)
                    continue
                if chunk.is_error:
                    error_chunk = chunk
                    break
                if not chunk.delta_text:
                    continue
                parts.append(chunk.delta_text)
                if live() and self._streaming_index is not None:
                    slot = self.session.turns[self._streaming_index]
                    slot.content = "".join(parts)
                    slot.pending = False
                    await self._notify_delta(self._streaming_index, chunk.delta_text)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if error_chunk is not None:
            logger.warning(
                "stream_interrupted",
                conversation_id=conversation_id,
                error=error_chunk.error,
                received_chars=sum(len(p) for p in parts),
            )
            raise StreamInterruptedError(error_chunk.error or "Unknown", details=error_chunk.details)

        text = "".join(parts)
        if not text.strip():
            logger.info("stream_empty", conversation_id=conversation_id)
            if live() and self._streaming_index is not None:
                slot = self.session.turns[self._streaming_index]
                slot.content = NO_RESPONSE_TEXT
                slot.pending = False
            return

        summary_task = context.add_turn(Turn(role=Role.ASSISTANT, content=text))
        if not self.store.persists_replies:
            await self._persist(conversation_id, [StoredMessage(
                role=Role.ASSISTANT, content=text, sender_id=ASSISTANT_SENDER_ID,
                sent_at=datetime.now(timezone.utc),
            )])
        await self._save_context(conversation_id, context)
        if summary_task is not None:
            self._spawn(self._save_context_after(summary_task, conversation_id, context))
        if live():
            self.session.refresh_counter += 1
        logger.info("reply_completed", conversation_id=conversation_id, chars=len(text))

    def _replace_placeholder(self, message: str) -> None:
        """Swap the streaming slot (or append, if there is none) for an ERROR row."""
        error = DisplayMessage(role=Role.ERROR, content=message)
        index = self._streaming_index
        if index is not None and index < len(self.session.turns):
            self.session.turns[index] = error
        else:
            self.session.turns.append(error)
        self._streaming_index = None

    def _settle_placeholder(self) -> None:
        index = self._streaming_index
        if index is None or index >= len(self.session.turns):
            return
        slot = self.session.turns[index]
        if slot.pending:
            slot.content = NO_RESPONSE_TEXT
            slot.pending = False

    # --- Persistence helpers ---

    async def _persist(self, conversation_id: str, messages: list[StoredMessage]) -> None:
        """Append messages; failures are logged, local state is not rolled back."""
        try:
            await self.store.append_messages(conversation_id, messages)
        except AuthFailure:
            raise
        except TransportError as e:
            logger.warning(
                "message_persist_failed",
                conversation_id=conversation_id,
                role=messages[0].role.value,
                error=e.message,
            )

    async def _save_context(self, conversation_id: str, context: ContextManager) -> None:
        try:
            await self.store.put_context(conversation_id, context.export_snapshot())
        except TransportError as e:
            logger.warning("context_save_failed", conversation_id=conversation_id, error=e.message)

    async def _save_context_after(
        self, task: asyncio.Task[bool], conversation_id: str, context: ContextManager
    ) -> None:
        if await task:
            await self._save_context(conversation_id, context)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for background summarization and follow-up saves to settle."""
        await self.context.wait_idle()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def force_summary(self) -> bool:
        """Summarize the current conversation now and persist the snapshot."""
        conversation_id = self.session.conversation_id
        context = self.context
        updated = await context.force_summary_update()
        if updated and conversation_id is not None:
            await self._save_context(conversation_id, context)
        return updated

    # --- Conversation list ---

    async def list_conversations(self) -> list[ConversationRecord]:
        return await self.store.list_conversations()

    async def delete_conversation(self, conversation_id: str) -> bool:
        deleted = await self.store.delete_conversation(conversation_id)
        if deleted and conversation_id == self.session.conversation_id:
            await self._reset_session()
        if deleted:
            self.session.refresh_counter += 1
            logger.info("chat_deleted", conversation_id=conversation_id)
        return deleted
