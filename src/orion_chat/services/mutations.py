"""Send, retry, edit, branch and share as compositions of store writes and a dispatcher stream."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID, uuid4

import structlog

from ..domain.catalog import DEFAULT_MODEL_ID
from ..domain.errors import (
    ChatNotFoundError,
    MessageNotFoundError,
    RemoteWriteError,
    SharedChatExpiredError,
    display_text_of,
    error_type_of,
)
from ..domain.models import (
    Chat,
    ChatSettings,
    CompletionChunk,
    CompletionRequest,
    Message,
    MessageType,
    Role,
    SharedChat,
    SharedMessage,
    utc_now,
)
from .context import build_prompt
from .conversation_store import ConversationStore
from .dispatcher import CredentialSource, Dispatcher
from .streaming import DEFAULT_PERSIST_INTERVAL, consume_stream

logger = structlog.get_logger()

DEFAULT_CHAT_TITLE = "New conversation"
DEFAULT_SHARED_TITLE = "Shared conversation"
TITLE_LENGTH = 50


def chat_title(messages: List[Message]) -> str:
    """Title taken from the first user message."""
    for message in messages:
        if message.role == Role.USER and message.content:
            if len(message.content) > TITLE_LENGTH:
                return message.content[:TITLE_LENGTH] + "..."
            return message.content
    return DEFAULT_CHAT_TITLE


def _history_through_last_user(messages: List[Message]) -> List[Message]:
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role == Role.USER and not message.is_error:
            return [m for m in messages[: index + 1] if not m.is_error]
    raise ValueError("No user message found to retry")


class MutationEngine:
    """Conversation mutations over the active chat of a ``ConversationStore``.

    Generation failures are recorded as a single error message in the chat
    and that message is returned; only a store write that cannot record the
    failure raises. A generation whose placeholder was deleted midway
    returns None. Switching the store to another chat does not stop a
    generation: its reply or error still lands in the chat it started in.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: Dispatcher,
        credentials: Optional[CredentialSource] = None,
        assembler: Callable = build_prompt,
        settings: Optional[ChatSettings] = None,
        default_model_id: str = DEFAULT_MODEL_ID,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.credentials = credentials
        self.assembler = assembler
        self.settings = settings or ChatSettings()
        self.default_model_id = default_model_id
        self.persist_interval = persist_interval
        self.clock = clock

    def _active_chat(self) -> UUID:
        if self.store.chat_id is None:
            raise ValueError("No active chat")
        return self.store.chat_id

    def _next_timestamp(self) -> datetime:
        """Now, or just after the newest message when the clock lags behind it."""
        now = self.clock()
        latest = max((m.created_at for m in self.store.messages), default=None)
        if latest is not None and now <= latest:
            return latest + timedelta(milliseconds=1)
        return now

    def _find(self, message_id: UUID) -> int:
        for index, message in enumerate(self.store.messages):
            if message.id == message_id:
                return index
        raise MessageNotFoundError(message_id)

    def _model_for(self, *candidates: Optional[str]) -> str:
        for candidate in (*candidates, self.settings.model_id):
            if candidate:
                return candidate
        return self.default_model_id

    async def _delete_newest_first(self, messages: List[Message]) -> None:
        for message in reversed(messages):
            try:
                await self.store.delete(message.id)
            except MessageNotFoundError:
                logger.info("message_already_deleted", message_id=str(message.id))

    async def send_message(self, content: str, model_id: Optional[str] = None) -> Optional[Message]:
        """Add a user message and generate the reply to the whole chat."""
        chat_id = self._active_chat()
        model = self._model_for(model_id)
        user_message = Message(
            chat_id=chat_id,
            role=Role.USER,
            content=content,
            metadata={"model": model},
            created_at=self._next_timestamp(),
        )
        await self.store.add(user_message)
        logger.info("message_sent", chat_id=str(chat_id), model=model)
        return await self._generate(self.store.messages, model)

    async def retry(self, message_id: UUID, model_id: Optional[str] = None) -> Optional[Message]:
        """Regenerate the answer at ``message_id``.

        A user target is kept and everything after it is replaced; an
        assistant target is replaced together with everything after it.
        """
        self._active_chat()
        messages = self.store.messages
        index = self._find(message_id)
        target = messages[index]
        cut = index + 1 if target.role == Role.USER else index
        surviving, doomed = messages[:cut], messages[cut:]
        history = _history_through_last_user(surviving)

        deleted_model = next(
            (m.metadata.get("model") for m in doomed if m.role == Role.ASSISTANT and m.metadata.get("model")),
            None,
        )
        model = self._model_for(model_id, deleted_model, target.metadata.get("model"))
        logger.info("retry_started", message_id=str(message_id), model=model, deleting=len(doomed))

        await self._delete_newest_first(doomed)
        return await self._generate(history, model)

    async def edit(self, message_id: UUID, content: str, model_id: Optional[str] = None) -> Optional[Message]:
        """Replace a user message's content and regenerate from there."""
        self._active_chat()
        messages = self.store.messages
        index = self._find(message_id)
        target = messages[index]
        if target.role != Role.USER:
            raise ValueError("Only user messages can be edited")

        await self._delete_newest_first(messages[index + 1:])
        metadata = {**target.metadata, "edited_at": self.clock().isoformat()}
        await self.store.update(message_id, {"content": content, "metadata": metadata})

        model = self._model_for(model_id, target.metadata.get("model"))
        history = [m for m in self.store.messages if m.created_at <= target.created_at]
        logger.info("edit_resent", message_id=str(message_id), model=model)
        return await self._generate(history, model)

    async def branch(self, message_id: UUID, user_id: Optional[str] = None) -> Chat:
        """Copy the chat up to and including ``message_id`` into a new chat."""
        source_chat_id = self._active_chat()
        messages = self.store.messages
        index = self._find(message_id)
        to_copy = messages[: index + 1]

        if user_id is None:
            source = self.store.get_chat(source_chat_id)
            user_id = source.user_id if source else self.store.user_id
        if user_id is None:
            raise ValueError("A user is required to create a branch")

        chat = await self.store.create_chat(
            Chat(title=chat_title(to_copy), user_id=user_id, parent_chat_id=source_chat_id)
        )
        copies = await self._fill_new_chat(chat, to_copy)
        logger.info("chat_branched", chat_id=str(chat.id), source_chat_id=str(source_chat_id), count=len(copies))
        return chat

    async def share_chat(self, expires_in_days: Optional[int] = None) -> SharedChat:
        """Publish a read-only snapshot of the active chat."""
        chat_id = self._active_chat()
        messages = self.store.messages
        if not messages:
            raise ValueError("No messages available to share")
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)

        now = self.clock()
        expires_at = None
        if expires_in_days and expires_in_days > 0:
            expires_at = now + timedelta(days=expires_in_days)
        shared = SharedChat(
            original_chat_id=chat_id,
            owner_user_id=chat.user_id,
            title=chat.title or DEFAULT_SHARED_TITLE,
            messages_snapshot=[SharedMessage.model_validate(m.model_dump()) for m in messages],
            expires_at=expires_at,
            created_at=now,
        )
        return await self.store.share_chat(shared)

    async def copy_shared_chat(self, shared_chat_id: UUID, user_id: str) -> Chat:
        """Copy a shared snapshot into a new private chat of ``user_id``."""
        shared = await self.store.get_shared_chat(shared_chat_id)
        if shared.is_expired(self.clock()):
            raise SharedChatExpiredError(shared_chat_id)
        if not shared.messages_snapshot:
            raise ValueError("No messages available to copy")

        chat = await self.store.create_chat(Chat(title=shared.title, user_id=user_id))
        messages = [
            Message.model_validate({**m.model_dump(), "chat_id": chat.id})
            for m in shared.messages_snapshot
        ]
        copies = await self._fill_new_chat(chat, messages)
        logger.info("shared_chat_copied", chat_id=str(chat.id), shared_chat_id=str(shared_chat_id), count=len(copies))
        return chat

    async def _fill_new_chat(self, chat: Chat, messages: List[Message]) -> List[Message]:
        """Insert fresh copies of ``messages`` into ``chat``; the chat is deleted if that fails."""
        base = self.clock()
        copies = [
            message.model_copy(
                update={
                    "id": uuid4(),
                    "chat_id": chat.id,
                    "parent_message_id": None,
                    "created_at": base + timedelta(milliseconds=offset),
                },
                deep=True,
            )
            for offset, message in enumerate(messages)
        ]
        try:
            await self.store.insert_messages(chat.id, copies)
        except Exception:
            logger.error("chat_copy_failed", chat_id=str(chat.id))
            try:
                await self.store.delete_chat(chat.id)
            except RemoteWriteError as cleanup_error:
                logger.error("chat_copy_cleanup_failed", chat_id=str(chat.id), error=str(cleanup_error))
            raise
        return copies

    async def _generate(self, history: List[Message], model_id: str) -> Optional[Message]:
        chat_id = self._active_chat()
        placeholder_id: Optional[UUID] = None
        try:
            descriptor, _ = self.dispatcher.resolve(model_id)
            settings = self.settings.model_copy(update={"model_id": model_id})
            chat = self.store.get_chat(chat_id)
            prompt = self.assembler(history, settings, chat.summary if chat else None)
            request = CompletionRequest(
                model_id=model_id,
                messages=prompt,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                stream=True,
            )

            placeholder = Message(
                chat_id=chat_id,
                role=Role.ASSISTANT,
                content="",
                metadata={
                    "model": model_id,
                    "provider": descriptor.provider,
                    "loading": True,
                    "streaming": True,
                },
                created_at=self._next_timestamp(),
            )
            await self.store.add(placeholder)
            placeholder_id = placeholder.id

            def final_metadata(chunk: CompletionChunk) -> dict:
                return {
                    **chunk.metadata,
                    "model": model_id,
                    "provider": descriptor.provider,
                    "usage": chunk.usage.model_dump() if chunk.usage else None,
                    "finish_reason": chunk.finish_reason,
                    "streaming": False,
                    "loading": False,
                }

            chunks = self.dispatcher.stream_complete(request, self.credentials)
            reply = await consume_stream(
                self.store, placeholder_id, chunks, self.persist_interval, final_metadata
            )
            if reply is None:
                logger.info("generation_discarded", chat_id=str(chat_id), message_id=str(placeholder_id))
            else:
                logger.info("generation_completed", chat_id=str(chat_id), model=model_id, length=len(reply.content))
            return reply
        except Exception as e:
            return await self._record_failure(e, chat_id, placeholder_id, model_id)

    async def _record_failure(
        self, error: Exception, chat_id: UUID, placeholder_id: Optional[UUID], model_id: str
    ) -> Optional[Message]:
        logger.error(
            "generation_failed",
            chat_id=str(chat_id),
            model=model_id,
            error_type=error_type_of(error),
            error=str(error),
        )
        content = display_text_of(error)
        metadata = {
            "error": content,
            "originalError": str(error),
            "errorType": error_type_of(error),
            "timestamp": self.clock().isoformat(),
            "model": model_id,
            "loading": False,
            "streaming": False,
        }

        if placeholder_id is not None:
            current = await self.store.find_message(placeholder_id)
            if current is None:
                # deleted while streaming; the error belongs to discarded history
                logger.info("stale_error_dropped", message_id=str(placeholder_id))
                return None
            return await self.store.update(
                placeholder_id,
                {"type": MessageType.ERROR, "content": content, "metadata": {**current.metadata, **metadata}},
            )

        active = chat_id == self.store.chat_id
        error_message = Message(
            chat_id=chat_id,
            role=Role.ASSISTANT,
            content=content,
            type=MessageType.ERROR,
            metadata=metadata,
            created_at=self._next_timestamp() if active else self.clock(),
        )
        if not active:
            await self.store.insert_messages(chat_id, [error_message])
            return error_message
        await self.store.add(error_message)
        return error_message
