"""Shared fakes and fixtures."""

import asyncio
from typing import List, Optional

import pytest

from orion_chat.domain.models import (
    Chat,
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    Usage,
)
from orion_chat.repositories.memory import InMemoryLocalCache, InMemoryRemoteStore
from orion_chat.services.adapters.base import ProviderAdapter, StreamEvent
from orion_chat.services.conversation_store import ConversationStore
from orion_chat.services.dispatcher import Dispatcher
from orion_chat.services.mutations import MutationEngine

FAKE_MODELS = [
    ModelDescriptor(id="fake-model", provider="fake", display_name="Fake Model"),
    ModelDescriptor(id="fake-alt", provider="fake", display_name="Fake Alt", max_tokens=1024),
]


class FakeAdapter(ProviderAdapter):
    """Scripted provider: yields ``deltas``, optionally failing or pausing midway."""

    provider = "fake"

    def __init__(self, deltas=("Hello", " there", "!"), error: Optional[Exception] = None, fail_after: Optional[int] = None):
        self.deltas = list(deltas)
        self.error = error
        self.fail_after = fail_after
        self.pause_after: Optional[int] = None
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()
        self.requests: List[CompletionRequest] = []
        self.credentials: List[str] = []

    async def _complete(self, request, descriptor, credential) -> CompletionResult:
        self.requests.append(request)
        self.credentials.append(credential)
        if self.error is not None:
            raise self.error
        return CompletionResult(
            content="".join(self.deltas),
            model_id=descriptor.id,
            usage=Usage(input_tokens=3, output_tokens=len(self.deltas)),
            finish_reason="stop",
            metadata=self.base_metadata(request, descriptor),
        )

    async def _stream_events(self, request, descriptor, credential):
        self.requests.append(request)
        self.credentials.append(credential)
        for index, delta in enumerate(self.deltas):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error
            if self.pause_after is not None and index == self.pause_after:
                self.paused.set()
                await self.resume.wait()
            yield StreamEvent(text=delta)
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise self.error
        yield StreamEvent(usage=Usage(input_tokens=3, output_tokens=len(self.deltas)), finish_reason="stop")


class FlakyRemoteStore(InMemoryRemoteStore):
    """In-memory remote store whose writes can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_insert = False
        self.fail_bulk_insert = False
        self.fail_update = False
        self.fail_delete = False
        self.fail_chat_writes = False
        self.fail_select = False
        self.fail_share = False

    def _maybe_fail(self, flag: bool) -> None:
        if flag:
            raise RuntimeError("remote store unavailable")

    async def insert_message(self, message):
        self._maybe_fail(self.fail_insert)
        return await super().insert_message(message)

    async def insert_messages(self, messages):
        self._maybe_fail(self.fail_bulk_insert)
        return await super().insert_messages(messages)

    async def update_message(self, message_id, fields):
        self._maybe_fail(self.fail_update)
        return await super().update_message(message_id, fields)

    async def delete_message(self, message_id):
        self._maybe_fail(self.fail_delete)
        return await super().delete_message(message_id)

    async def select_messages(self, chat_id):
        self._maybe_fail(self.fail_select)
        return await super().select_messages(chat_id)

    async def insert_chat(self, chat):
        self._maybe_fail(self.fail_chat_writes)
        return await super().insert_chat(chat)

    async def update_chat(self, chat_id, fields):
        self._maybe_fail(self.fail_chat_writes)
        return await super().update_chat(chat_id, fields)

    async def delete_chat(self, chat_id):
        self._maybe_fail(self.fail_chat_writes)
        return await super().delete_chat(chat_id)

    async def insert_shared_chat(self, shared):
        self._maybe_fail(self.fail_share)
        return await super().insert_shared_chat(shared)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def dispatcher(adapter):
    return Dispatcher([adapter], FAKE_MODELS)


@pytest.fixture
def credentials():
    return {"fake": "test-key"}


@pytest.fixture
def cache():
    return InMemoryLocalCache()


@pytest.fixture
def remote():
    return FlakyRemoteStore()


@pytest.fixture
def store(cache, remote):
    return ConversationStore(cache, remote)


@pytest.fixture
def engine(store, dispatcher, credentials):
    return MutationEngine(
        store,
        dispatcher,
        credentials=credentials,
        default_model_id="fake-model",
        persist_interval=0.01,
    )


@pytest.fixture
def open_chat(store):
    """Create a chat through the store and make it active."""

    async def _open(user_id: str = "user-1", title: str = "Test chat") -> Chat:
        chat = await store.create_chat(Chat(title=title, user_id=user_id))
        await store.load(chat.id)
        await store.wait_until_synced()
        return chat

    return _open
