"""Per-chat sessions shared by the HTTP handlers."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import structlog

from ..config import AppConfig
from ..domain.errors import ChatNotFoundError
from ..repositories.base import LocalCache, RemoteStore
from ..services.conversation_store import ConversationStore
from ..services.dispatcher import CredentialSource, Dispatcher
from ..services.mutations import MutationEngine
from ..services.summary import ConversationSummarizer

logger = structlog.get_logger()


@dataclass
class ChatSession:
    """Store, engine and summarizer bound to one active chat."""

    store: ConversationStore
    engine: MutationEngine
    summarizer: ConversationSummarizer


class ChatSessions:
    """Chat list plus one lazily created session per chat.

    At most ``config.max_sessions`` chat sessions are kept; the least
    recently used one is evicted first.
    """

    def __init__(
        self,
        config: AppConfig,
        dispatcher: Dispatcher,
        cache: LocalCache,
        remote: RemoteStore,
        credentials: Optional[CredentialSource] = None,
    ):
        self.config = config
        self.dispatcher = dispatcher
        self.cache = cache
        self.remote = remote
        self.credentials = credentials
        self.directory = ConversationStore(cache, remote)
        self._directory_engine: Optional[MutationEngine] = None
        self._sessions: "OrderedDict[UUID, ChatSession]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._chats_loaded = False

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: UUID) -> bool:
        return chat_id in self._sessions

    async def chats(self) -> ConversationStore:
        """Store holding the chat list, synced with the remote store on first use."""
        if not self._chats_loaded:
            await self.directory.load_chats(self.config.user_id)
            await self.directory.wait_until_synced()
            self._chats_loaded = True
        return self.directory

    async def engine(self) -> MutationEngine:
        """Engine over the chat-list store, for mutations that create whole chats."""
        directory = await self.chats()
        if self._directory_engine is None:
            self._directory_engine = self._engine_for(directory)
        return self._directory_engine

    def _engine_for(self, store: ConversationStore) -> MutationEngine:
        return MutationEngine(
            store,
            self.dispatcher,
            credentials=self.credentials,
            default_model_id=self.config.default_model_id,
            persist_interval=self.config.persist_interval,
        )

    async def get(self, chat_id: UUID) -> ChatSession:
        async with self._lock:
            session = self._sessions.get(chat_id)
            if session is not None:
                self._sessions.move_to_end(chat_id)
                return session

            store = ConversationStore(self.cache, self.remote)
            await store.load_chats(self.config.user_id)
            await store.load(chat_id)
            await store.wait_until_synced()
            if store.get_chat(chat_id) is None:
                raise ChatNotFoundError(chat_id)

            summarizer = ConversationSummarizer(
                self.dispatcher,
                store,
                credentials=self.credentials,
                model_id=self.config.default_model_id,
            )
            session = ChatSession(store=store, engine=self._engine_for(store), summarizer=summarizer)
            self._sessions[chat_id] = session
            logger.info("chat_session_opened", chat_id=str(chat_id))
            while len(self._sessions) > self.config.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("chat_session_evicted", chat_id=str(evicted), open_sessions=len(self._sessions))
            return session

    def drop(self, chat_id: UUID) -> None:
        self._sessions.pop(chat_id, None)
