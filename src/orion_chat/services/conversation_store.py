"""Local-first store for the messages and chats of one session.

Every write lands in memory first, then in the local cache, then in the
remote store. A failed remote write is compensated (add and delete) or
resynchronized from the remote store (update) and surfaces as
``RemoteWriteError``. Reads never wait for the network: ``load`` answers
from the cache and reconciles with the remote store in a background task.
"""

import asyncio
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from uuid import UUID

import structlog

from ..domain.errors import (
    ChatNotFoundError,
    MessageNotFoundError,
    RemoteWriteError,
    SharedChatNotFoundError,
)
from ..domain.models import Chat, Message, SharedChat, WriteState, utc_now
from ..repositories.base import LocalCache, RemoteStore

logger = structlog.get_logger()

IMMUTABLE_FIELDS = ("id", "chat_id")


@dataclass(frozen=True)
class StoreEvent:
    """Notification published to store observers."""

    kind: str
    chat_id: Optional[UUID] = None
    message_id: Optional[UUID] = None


Listener = Callable[[StoreEvent], None]


def _changed(a: Message, b: Message) -> bool:
    return (
        a.content != b.content
        or a.metadata != b.metadata
        or a.type != b.type
        or a.created_at != b.created_at
    )


class ConversationStore:
    """Authoritative in-memory state of the active chat and the chat list."""

    def __init__(self, cache: LocalCache, remote: RemoteStore):
        self.cache = cache
        self.remote = remote
        self.chat_id: Optional[UUID] = None
        self.user_id: Optional[str] = None
        self._messages: List[Message] = []
        self._write_states: Dict[UUID, WriteState] = {}
        self._chats: Dict[UUID, Chat] = {}
        self._listeners: List[Listener] = []
        # local mutation counter; lets a reconciliation spot writes made while it was fetching
        self._version = 0
        self._touched: Dict[UUID, int] = {}
        self._deleted: Set[UUID] = set()
        self._cache_lock = asyncio.Lock()
        self._sync_task: Optional[asyncio.Task] = None
        self._chats_task: Optional[asyncio.Task] = None

    # -- observation -------------------------------------------------------

    @property
    def messages(self) -> List[Message]:
        """Snapshot of the active chat, ordered by created_at."""
        return list(self._messages)

    @property
    def chats(self) -> List[Chat]:
        """Known chats, pinned first, then most recently updated."""
        by_recency = sorted(self._chats.values(), key=lambda c: c.updated_at, reverse=True)
        return sorted(by_recency, key=lambda c: not c.pinned)

    @property
    def syncing(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    def get_message(self, message_id: UUID) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def has_message(self, message_id: UUID) -> bool:
        return self.get_message(message_id) is not None

    def is_deleted(self, message_id: UUID) -> bool:
        return message_id in self._deleted

    async def find_message(self, message_id: UUID) -> Optional[Message]:
        """A message of any chat: memory for the active one, else the cache."""
        current = self.get_message(message_id)
        if current is not None or message_id in self._deleted:
            return current
        try:
            return await self.cache.get_message(message_id)
        except Exception as e:
            logger.warning("cache_read_failed", message_id=str(message_id), error=str(e))
            return None

    def write_state(self, message_id: UUID) -> Optional[WriteState]:
        return self._write_states.get(message_id)

    def get_chat(self, chat_id: UUID) -> Optional[Chat]:
        return self._chats.get(chat_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, message_id: Optional[UUID] = None, chat_id: Optional[UUID] = None) -> None:
        event = StoreEvent(kind=kind, chat_id=chat_id or self.chat_id, message_id=message_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("store_listener_error", store_event=kind, error=str(e))

    # -- in-memory bookkeeping ---------------------------------------------

    def _touch(self, message_id: UUID) -> None:
        self._version += 1
        self._touched[message_id] = self._version

    def _insert_sorted(self, message: Message) -> None:
        keys = [m.created_at for m in self._messages]
        self._messages.insert(bisect_right(keys, message.created_at), message)

    def _remove(self, message_id: UUID) -> Optional[Message]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return self._messages.pop(index)
        return None

    def _replace(self, message: Message) -> None:
        self._remove(message.id)
        self._insert_sorted(message)

    async def _cache_put(self, message_id: UUID) -> None:
        # re-checked under the lock so a late write cannot resurrect a deleted message
        async with self._cache_lock:
            message = self.get_message(message_id)
            if message is None:
                return
            try:
                await self.cache.put_message(message)
            except Exception as e:
                logger.warning("cache_write_failed", message_id=str(message_id), error=str(e))

    async def _cache_replace(self, message: Message) -> bool:
        """Overwrite a cached message outside the active chat; False when it is gone."""
        async with self._cache_lock:
            if message.id in self._deleted:
                return False
            try:
                if await self.cache.get_message(message.id) is None:
                    return False
                await self.cache.put_message(message)
            except Exception as e:
                logger.warning("cache_write_failed", message_id=str(message.id), error=str(e))
            return True

    async def _cache_delete(self, message_id: UUID) -> None:
        async with self._cache_lock:
            try:
                await self.cache.delete_message(message_id)
            except Exception as e:
                logger.warning("cache_delete_failed", message_id=str(message_id), error=str(e))

    # -- loading and reconciliation ----------------------------------------

    async def load(self, chat_id: UUID) -> List[Message]:
        """Make ``chat_id`` active: cached snapshot now, remote state in the background."""
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()

        self.chat_id = chat_id
        self._touched = {}
        try:
            cached = await self.cache.get_chat_messages(chat_id)
        except Exception as e:
            logger.warning("cache_read_failed", chat_id=str(chat_id), error=str(e))
            cached = []

        unique: Dict[UUID, Message] = {}
        for message in cached:
            unique[message.id] = message
        self._messages = sorted(unique.values(), key=lambda m: m.created_at)
        self._write_states = {m.id: WriteState.CONFIRMED for m in self._messages}
        logger.info("messages_loaded_from_cache", chat_id=str(chat_id), count=len(self._messages))
        self._emit("loaded")

        self._sync_task = asyncio.create_task(self._reconcile(chat_id))
        return self.messages

    async def wait_until_synced(self) -> None:
        """Wait for the background reconciliations started by ``load`` and ``load_chats``."""
        for task in (self._sync_task, self._chats_task):
            if task is not None and not task.done():
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def refresh(self) -> List[Message]:
        """Reconcile the active chat with the remote store and return the result."""
        if self.chat_id is not None:
            await self._reconcile(self.chat_id)
        return self.messages

    async def _reconcile(self, chat_id: UUID, authoritative: Iterable[UUID] = ()) -> bool:
        started = self._version
        try:
            remote_messages = await self.remote.select_messages(chat_id)
        except Exception as e:
            logger.error("remote_sync_failed", chat_id=str(chat_id), error=str(e))
            return False

        if chat_id != self.chat_id:
            logger.info("remote_sync_discarded", chat_id=str(chat_id))
            return False

        forced: Set[UUID] = set(authoritative)
        recent = {
            message_id
            for message_id, version in self._touched.items()
            if version > started and message_id not in forced
        }
        local = {m.id: m for m in self._messages}

        merged: Dict[UUID, Message] = {}
        states: Dict[UUID, WriteState] = {}
        for message in remote_messages:
            if message.id in recent:
                # written locally after the fetch started; absent locally means deleted
                if message.id in local:
                    merged[message.id] = local[message.id]
                    states[message.id] = self._write_states.get(message.id, WriteState.CONFIRMED)
                continue
            merged[message.id] = message
            states[message.id] = WriteState.CONFIRMED
        for message in self._messages:
            if message.id in merged or message.id in forced:
                continue
            if self._write_states.get(message.id) == WriteState.PENDING_LOCAL or message.id in recent:
                merged[message.id] = message
                states[message.id] = self._write_states.get(message.id, WriteState.PENDING_LOCAL)

        self._messages = sorted(merged.values(), key=lambda m: m.created_at)
        self._write_states.update(states)
        await self._sync_cache(chat_id)
        logger.info(
            "remote_sync_completed",
            chat_id=str(chat_id),
            remote_count=len(remote_messages),
            count=len(self._messages),
        )
        self._emit("synced")
        return True

    async def _sync_cache(self, chat_id: UUID) -> None:
        """Apply only the differences between the cache and memory."""
        current = {m.id: m for m in self._messages}
        async with self._cache_lock:
            try:
                cached = {m.id: m for m in await self.cache.get_chat_messages(chat_id)}
                to_delete = [message_id for message_id in cached if message_id not in current]
                to_put = [
                    m for m in self._messages
                    if m.id not in cached or _changed(cached[m.id], m)
                ]
                for message_id in to_delete:
                    await self.cache.delete_message(message_id)
                if to_put:
                    await self.cache.put_messages(to_put)
            except Exception as e:
                logger.warning("cache_diff_failed", chat_id=str(chat_id), error=str(e))
                try:
                    await self.cache.delete_chat_messages(chat_id)
                    await self.cache.put_messages(self.messages)
                except Exception as rebuild_error:
                    logger.error("cache_rebuild_failed", chat_id=str(chat_id), error=str(rebuild_error))

    # -- message writes ----------------------------------------------------

    async def add(self, message: Message) -> Message:
        """Optimistically insert a message; reverted if the remote insert fails."""
        if self.chat_id is None or message.chat_id != self.chat_id:
            raise ValueError(f"Message {message.id} does not belong to the active chat")
        if self.has_message(message.id):
            raise ValueError(f"Message {message.id} already exists")

        self._insert_sorted(message)
        self._write_states[message.id] = WriteState.PENDING_LOCAL
        self._touch(message.id)
        self._emit("added", message.id)
        await self._cache_put(message.id)

        try:
            await self.remote.insert_message(message)
        except Exception as e:
            logger.error("message_add_failed", chat_id=str(message.chat_id), message_id=str(message.id), error=str(e))
            self._remove(message.id)
            self._write_states[message.id] = WriteState.REJECTED_REVERTED
            self._touch(message.id)
            await self._cache_delete(message.id)
            self._emit("reverted", message.id)
            raise RemoteWriteError(f"Failed to save message {message.id}") from e

        if self.has_message(message.id):
            self._write_states[message.id] = WriteState.CONFIRMED
        logger.info("message_added", chat_id=str(message.chat_id), message_id=str(message.id), role=message.role)
        return message

    async def update(self, message_id: UUID, fields: Dict[str, Any]) -> Message:
        """Optimistically update fields; resynchronized from remote if the write fails.

        A message of an inactive chat is written to the remote store, then the cache.
        """
        for name in IMMUTABLE_FIELDS:
            if name in fields:
                raise ValueError(f"Field {name} cannot be updated")
        current = self.get_message(message_id)
        if current is None:
            return await self._update_detached(message_id, fields)

        updated = Message.model_validate({**current.model_dump(), **fields})
        self._replace(updated)
        self._write_states[message_id] = WriteState.PENDING_LOCAL
        self._touch(message_id)
        self._emit("updated", message_id)
        await self._cache_put(message_id)

        try:
            await self.remote.update_message(message_id, {k: getattr(updated, k) for k in fields})
        except Exception as e:
            logger.error("message_update_failed", message_id=str(message_id), error=str(e))
            if self.chat_id == updated.chat_id:
                await self._reconcile(updated.chat_id, authoritative=[message_id])
            self._write_states[message_id] = WriteState.REJECTED_REVERTED
            self._emit("resynced", message_id)
            raise RemoteWriteError(f"Failed to update message {message_id}") from e

        if self.has_message(message_id):
            self._write_states[message_id] = WriteState.CONFIRMED
        return self.get_message(message_id) or updated

    async def _update_detached(self, message_id: UUID, fields: Dict[str, Any]) -> Message:
        """Update a message of an inactive chat: remote first, then the cache."""
        current = await self.find_message(message_id)
        if current is None:
            raise MessageNotFoundError(message_id)

        updated = Message.model_validate({**current.model_dump(), **fields})
        try:
            await self.remote.update_message(message_id, {k: getattr(updated, k) for k in fields})
        except Exception as e:
            logger.error("message_update_failed", message_id=str(message_id), chat_id=str(updated.chat_id), error=str(e))
            raise RemoteWriteError(f"Failed to update message {message_id}") from e

        await self._cache_replace(updated)
        self._emit("updated", message_id, chat_id=updated.chat_id)
        return updated

    async def update_content_only(self, message_id: UUID, content: str) -> bool:
        """Update content in memory and cache only; False when the message is gone.

        Messages of an inactive chat are updated in the cache.
        """
        current = self.get_message(message_id)
        if current is None:
            cached = await self.find_message(message_id)
            if cached is None:
                return False
            if cached.content == content:
                return True
            return await self._cache_replace(cached.model_copy(update={"content": content}))
        if current.content != content:
            self._replace(current.model_copy(update={"content": content}))
            self._touch(message_id)
            self._emit("content", message_id)
            await self._cache_put(message_id)
        return True

    async def delete(self, message_id: UUID) -> None:
        """Optimistically delete; reinserted at its position if the remote delete fails."""
        message = self._remove(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        self._deleted.add(message_id)
        self._write_states[message_id] = WriteState.PENDING_LOCAL
        self._touch(message_id)
        self._emit("deleted", message_id)
        await self._cache_delete(message_id)

        try:
            await self.remote.delete_message(message_id)
        except Exception as e:
            logger.error("message_delete_failed", message_id=str(message_id), error=str(e))
            self._deleted.discard(message_id)
            if self.chat_id == message.chat_id and not self.has_message(message_id):
                self._insert_sorted(message)
                self._touch(message_id)
                await self._cache_put(message_id)
            self._write_states[message_id] = WriteState.REJECTED_REVERTED
            self._emit("reverted", message_id)
            raise RemoteWriteError(f"Failed to delete message {message_id}") from e

        self._write_states.pop(message_id, None)
        logger.info("message_deleted", chat_id=str(message.chat_id), message_id=str(message_id))

    async def insert_messages(self, chat_id: UUID, messages: List[Message]) -> List[Message]:
        """Bulk insert into any chat, remote first; used to populate new chats."""
        try:
            await self.remote.insert_messages(messages)
        except Exception as e:
            logger.error("messages_insert_failed", chat_id=str(chat_id), count=len(messages), error=str(e))
            raise RemoteWriteError(f"Failed to copy messages to chat {chat_id}") from e

        try:
            await self.cache.put_messages(messages)
        except Exception as e:
            logger.warning("cache_write_failed", chat_id=str(chat_id), error=str(e))

        if chat_id == self.chat_id:
            for message in messages:
                if not self.has_message(message.id):
                    self._insert_sorted(message)
                    self._write_states[message.id] = WriteState.CONFIRMED
                    self._touch(message.id)
                    self._emit("added", message.id)
        return messages

    async def fetch_messages(self, chat_id: UUID) -> List[Message]:
        """Messages of any chat: memory for the active one, else remote with cache fallback."""
        if chat_id == self.chat_id:
            return self.messages
        try:
            return await self.remote.select_messages(chat_id)
        except Exception as e:
            logger.warning("remote_read_failed", chat_id=str(chat_id), error=str(e))
            return await self.cache.get_chat_messages(chat_id)

    # -- chats -------------------------------------------------------------

    async def load_chats(self, user_id: str) -> List[Chat]:
        """Cached chat list now, remote chat list in the background."""
        self.user_id = user_id
        try:
            cached = await self.cache.get_chats(user_id)
        except Exception as e:
            logger.warning("cache_read_failed", user_id=user_id, error=str(e))
            cached = []
        self._chats = {chat.id: chat for chat in cached}
        self._emit("chats_loaded")
        if self._chats_task is not None and not self._chats_task.done():
            self._chats_task.cancel()
        self._chats_task = asyncio.create_task(self.refresh_chats())
        return self.chats

    async def refresh_chats(self) -> List[Chat]:
        """Replace the chat list with the remote one; remote failures keep the current list."""
        user_id = self.user_id
        if user_id is None:
            return self.chats
        try:
            remote_chats = await self.remote.select_chats(user_id)
        except Exception as e:
            logger.error("remote_chats_sync_failed", user_id=user_id, error=str(e))
            return self.chats
        if user_id != self.user_id:
            return self.chats

        self._chats = {chat.id: chat for chat in remote_chats}
        try:
            await self.cache.replace_chats(user_id, remote_chats)
        except Exception as e:
            logger.warning("cache_write_failed", user_id=user_id, error=str(e))
        self._emit("chats_loaded")
        return self.chats

    async def create_chat(self, chat: Chat) -> Chat:
        """Create a chat remotely, then record it locally."""
        try:
            created = await self.remote.insert_chat(chat)
        except Exception as e:
            logger.error("chat_create_failed", chat_id=str(chat.id), error=str(e))
            raise RemoteWriteError(f"Failed to create chat {chat.id}") from e

        self._chats[created.id] = created
        try:
            await self.cache.put_chat(created)
        except Exception as e:
            logger.warning("cache_write_failed", chat_id=str(created.id), error=str(e))
        logger.info("chat_created", chat_id=str(created.id), parent_chat_id=str(created.parent_chat_id))
        self._emit("chat_added", chat_id=created.id)
        return created

    async def update_chat(self, chat_id: UUID, fields: Dict[str, Any]) -> Chat:
        """Optimistically update a known chat; restored if the remote write fails."""
        if "id" in fields:
            raise ValueError("Field id cannot be updated")
        current = self._chats.get(chat_id)
        if current is None:
            raise ChatNotFoundError(chat_id)

        fields = {"updated_at": utc_now(), **fields}
        updated = Chat.model_validate({**current.model_dump(), **fields})
        self._chats[chat_id] = updated
        self._emit("chat_updated", chat_id=chat_id)

        try:
            await self.remote.update_chat(chat_id, {k: getattr(updated, k) for k in fields})
        except Exception as e:
            logger.error("chat_update_failed", chat_id=str(chat_id), error=str(e))
            if chat_id in self._chats:
                self._chats[chat_id] = current
            self._emit("chat_updated", chat_id=chat_id)
            raise RemoteWriteError(f"Failed to update chat {chat_id}") from e

        try:
            await self.cache.put_chat(updated)
        except Exception as e:
            logger.warning("cache_write_failed", chat_id=str(chat_id), error=str(e))
        return updated

    async def toggle_pin(self, chat_id: UUID) -> Chat:
        current = self._chats.get(chat_id)
        if current is None:
            raise ChatNotFoundError(chat_id)
        return await self.update_chat(chat_id, {"pinned": not current.pinned})

    async def delete_chat(self, chat_id: UUID) -> None:
        """Delete a chat and its messages; restored if the remote delete fails."""
        removed = self._chats.pop(chat_id, None)
        self._emit("chat_deleted", chat_id=chat_id)

        try:
            await self.remote.delete_chat(chat_id)
        except Exception as e:
            logger.error("chat_delete_failed", chat_id=str(chat_id), error=str(e))
            if removed is not None:
                self._chats[chat_id] = removed
                self._emit("chat_added", chat_id=chat_id)
            raise RemoteWriteError(f"Failed to delete chat {chat_id}") from e

        async with self._cache_lock:
            try:
                await self.cache.delete_chat(chat_id)
            except Exception as e:
                logger.warning("cache_delete_failed", chat_id=str(chat_id), error=str(e))
        if chat_id == self.chat_id:
            self._messages = []
            self._write_states = {}
            self._emit("loaded")
        logger.info("chat_deleted", chat_id=str(chat_id))

    # -- sharing -----------------------------------------------------------

    async def share_chat(self, shared: SharedChat) -> SharedChat:
        """Publish a snapshot remotely; nothing is kept locally."""
        try:
            created = await self.remote.insert_shared_chat(shared)
        except Exception as e:
            logger.error("chat_share_failed", chat_id=str(shared.original_chat_id), error=str(e))
            raise RemoteWriteError(f"Failed to share chat {shared.original_chat_id}") from e
        logger.info(
            "chat_shared",
            chat_id=str(shared.original_chat_id),
            shared_chat_id=str(created.id),
            count=len(created.messages_snapshot),
        )
        return created

    async def get_shared_chat(self, shared_chat_id: UUID) -> SharedChat:
        shared = await self.remote.select_shared_chat(shared_chat_id)
        if shared is None:
            raise SharedChatNotFoundError(shared_chat_id)
        return shared
