"""In-memory cache and remote store implementations."""

import asyncio
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.models import Chat, Message, SharedChat
from .base import LocalCache, RemoteStore

logger = structlog.get_logger()


def _by_created_at(messages) -> List[Message]:
    return sorted(messages, key=lambda m: m.created_at)


def _by_updated_at(chats) -> List[Chat]:
    return sorted(chats, key=lambda c: c.updated_at, reverse=True)


class InMemoryLocalCache(LocalCache):
    """Local cache kept in process memory."""

    def __init__(self) -> None:
        self._messages: Dict[UUID, Message] = {}
        self._chats: Dict[UUID, Chat] = {}
        self._lock = asyncio.Lock()

    async def get_chat_messages(self, chat_id: UUID) -> List[Message]:
        async with self._lock:
            return _by_created_at(
                m.model_copy(deep=True) for m in self._messages.values() if m.chat_id == chat_id
            )

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._lock:
            message = self._messages.get(message_id)
            return message.model_copy(deep=True) if message else None

    async def put_message(self, message: Message) -> None:
        async with self._lock:
            self._messages[message.id] = message.model_copy(deep=True)

    async def put_messages(self, messages: List[Message]) -> None:
        async with self._lock:
            for message in messages:
                self._messages[message.id] = message.model_copy(deep=True)

    async def delete_message(self, message_id: UUID) -> None:
        async with self._lock:
            self._messages.pop(message_id, None)

    async def delete_chat_messages(self, chat_id: UUID) -> None:
        async with self._lock:
            self._drop_chat_messages(chat_id)

    def _drop_chat_messages(self, chat_id: UUID) -> None:
        for message_id in [m.id for m in self._messages.values() if m.chat_id == chat_id]:
            del self._messages[message_id]

    async def get_chats(self, user_id: str) -> List[Chat]:
        async with self._lock:
            return _by_updated_at(
                c.model_copy(deep=True) for c in self._chats.values() if c.user_id == user_id
            )

    async def put_chat(self, chat: Chat) -> None:
        async with self._lock:
            self._chats[chat.id] = chat.model_copy(deep=True)

    async def delete_chat(self, chat_id: UUID) -> None:
        async with self._lock:
            self._chats.pop(chat_id, None)
            self._drop_chat_messages(chat_id)

    async def replace_chats(self, user_id: str, chats: List[Chat]) -> None:
        async with self._lock:
            for chat_id in [c.id for c in self._chats.values() if c.user_id == user_id]:
                del self._chats[chat_id]
            for chat in chats:
                self._chats[chat.id] = chat.model_copy(deep=True)

    async def clear(self) -> None:
        async with self._lock:
            self._messages.clear()
            self._chats.clear()


class InMemoryRemoteStore(RemoteStore):
    """Remote store stand-in holding rows in process memory."""

    def __init__(self) -> None:
        self._messages: Dict[UUID, Message] = {}
        self._chats: Dict[UUID, Chat] = {}
        self._shared: Dict[UUID, SharedChat] = {}
        self._lock = asyncio.Lock()

    def _check_insert(self, message: Message) -> None:
        if message.id in self._messages:
            raise ValueError(f"Message {message.id} already exists")
        if message.chat_id not in self._chats:
            logger.error("chat_not_found_for_message", chat_id=str(message.chat_id))
            raise ValueError(f"Chat {message.chat_id} not found")

    async def insert_message(self, message: Message) -> Message:
        async with self._lock:
            self._check_insert(message)
            self._messages[message.id] = message.model_copy(deep=True)
            logger.info("remote_message_inserted", chat_id=str(message.chat_id), message_id=str(message.id))
            return message

    async def insert_messages(self, messages: List[Message]) -> List[Message]:
        async with self._lock:
            for message in messages:
                self._check_insert(message)
            for message in messages:
                self._messages[message.id] = message.model_copy(deep=True)
            return messages

    async def update_message(self, message_id: UUID, fields: Dict[str, Any]) -> None:
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                logger.warning("remote_message_not_found", message_id=str(message_id))
                return
            self._messages[message_id] = message.model_copy(update=fields, deep=True)

    async def delete_message(self, message_id: UUID) -> None:
        async with self._lock:
            self._messages.pop(message_id, None)

    async def select_messages(self, chat_id: UUID) -> List[Message]:
        async with self._lock:
            return _by_created_at(
                m.model_copy(deep=True) for m in self._messages.values() if m.chat_id == chat_id
            )

    async def insert_chat(self, chat: Chat) -> Chat:
        async with self._lock:
            if chat.id in self._chats:
                raise ValueError(f"Chat {chat.id} already exists")
            self._chats[chat.id] = chat.model_copy(deep=True)
            logger.info("remote_chat_inserted", chat_id=str(chat.id))
            return chat

    async def update_chat(self, chat_id: UUID, fields: Dict[str, Any]) -> None:
        async with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                logger.warning("remote_chat_not_found", chat_id=str(chat_id))
                return
            self._chats[chat_id] = chat.model_copy(update=fields, deep=True)

    async def delete_chat(self, chat_id: UUID) -> None:
        async with self._lock:
            self._chats.pop(chat_id, None)
            for message_id in [m.id for m in self._messages.values() if m.chat_id == chat_id]:
                del self._messages[message_id]

    async def select_chats(self, user_id: str) -> List[Chat]:
        async with self._lock:
            return _by_updated_at(
                c.model_copy(deep=True) for c in self._chats.values() if c.user_id == user_id
            )

    async def insert_shared_chat(self, shared: SharedChat) -> SharedChat:
        async with self._lock:
            if shared.id in self._shared:
                raise ValueError(f"Shared chat {shared.id} already exists")
            self._shared[shared.id] = shared.model_copy(deep=True)
            logger.info("remote_shared_chat_inserted", shared_chat_id=str(shared.id))
            return shared

    async def select_shared_chat(self, shared_chat_id: UUID) -> Optional[SharedChat]:
        async with self._lock:
            shared = self._shared.get(shared_chat_id)
            return shared.model_copy(deep=True) if shared else None
