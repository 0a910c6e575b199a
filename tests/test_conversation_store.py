"""Test suite for the local-first conversation store."""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from orion_chat.domain.errors import ChatNotFoundError, MessageNotFoundError, RemoteWriteError
from orion_chat.domain.models import Chat, Message, Role, WriteState
from orion_chat.repositories.memory import InMemoryLocalCache
from orion_chat.services.conversation_store import ConversationStore

from conftest import FlakyRemoteStore

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_message(chat_id, content, seconds, role=Role.USER):
    return Message(
        chat_id=chat_id,
        role=role,
        content=content,
        created_at=BASE + timedelta(seconds=seconds),
    )


def contents(store):
    return [m.content for m in store.messages]


class GatedRemoteStore(FlakyRemoteStore):
    """Takes its snapshot immediately but holds the answer until released."""

    def __init__(self):
        super().__init__()
        self.gate = None
        self.fetching = asyncio.Event()

    async def select_messages(self, chat_id):
        rows = await super().select_messages(chat_id)
        if self.gate is not None:
            self.fetching.set()
            await self.gate.wait()
        return rows


@pytest.mark.asyncio
async def test_load_answers_from_cache_then_takes_remote_state(store, cache, remote):
    chat = await store.create_chat(Chat(user_id="user-1"))
    await cache.put_messages([
        make_message(chat.id, "third", 3),
        make_message(chat.id, "first", 1),
        make_message(chat.id, "second", 2),
    ])
    confirmed = make_message(chat.id, "from remote", 5)
    await remote.insert_message(confirmed)

    loaded = await store.load(chat.id)
    assert [m.content for m in loaded] == ["first", "second", "third"]

    await store.wait_until_synced()
    assert contents(store) == ["from remote"]
    assert store.write_state(confirmed.id) == WriteState.CONFIRMED
    assert [m.content for m in await cache.get_chat_messages(chat.id)] == ["from remote"]


@pytest.mark.asyncio
async def test_add_confirms_after_remote_insert(store, remote, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "hi", 1)

    await store.add(message)

    assert store.write_state(message.id) == WriteState.CONFIRMED
    assert [m.id for m in await remote.select_messages(chat.id)] == [message.id]


@pytest.mark.asyncio
async def test_failed_add_leaves_no_ghost(store, cache, remote, open_chat):
    chat = await open_chat()
    events = []
    store.subscribe(lambda event: events.append(event.kind))
    remote.fail_insert = True
    message = make_message(chat.id, "lost", 1)

    with pytest.raises(RemoteWriteError):
        await store.add(message)

    assert not store.has_message(message.id)
    assert store.write_state(message.id) == WriteState.REJECTED_REVERTED
    assert await cache.get_message(message.id) is None
    assert events == ["added", "reverted"]


@pytest.mark.asyncio
async def test_add_rejects_foreign_or_duplicate_messages(store, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "once", 1)
    await store.add(message)

    with pytest.raises(ValueError):
        await store.add(message)
    with pytest.raises(ValueError):
        await store.add(make_message(uuid4(), "elsewhere", 2))
    assert contents(store) == ["once"]


@pytest.mark.asyncio
async def test_messages_stay_ordered_by_creation_time(store, open_chat):
    chat = await open_chat()
    for content, seconds in (("b", 2), ("c", 3), ("a", 1)):
        await store.add(make_message(chat.id, content, seconds))

    assert contents(store) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_failed_delete_restores_position(store, cache, remote, open_chat):
    chat = await open_chat()
    messages = [make_message(chat.id, text, i) for i, text in enumerate(["one", "two", "three"])]
    for message in messages:
        await store.add(message)
    remote.fail_delete = True

    with pytest.raises(RemoteWriteError):
        await store.delete(messages[1].id)

    assert contents(store) == ["one", "two", "three"]
    assert store.write_state(messages[1].id) == WriteState.REJECTED_REVERTED
    assert await cache.get_message(messages[1].id) is not None


@pytest.mark.asyncio
async def test_delete_unknown_message(store, open_chat):
    await open_chat()
    with pytest.raises(MessageNotFoundError):
        await store.delete(uuid4())


@pytest.mark.asyncio
async def test_failed_update_resyncs_from_remote(store, cache, remote, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "original", 1)
    await store.add(message)
    remote.fail_update = True

    with pytest.raises(RemoteWriteError):
        await store.update(message.id, {"content": "changed"})

    assert store.get_message(message.id).content == "original"
    assert store.write_state(message.id) == WriteState.REJECTED_REVERTED
    assert (await cache.get_message(message.id)).content == "original"


@pytest.mark.asyncio
async def test_update_merges_fields(store, remote, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "draft", 1)
    await store.add(message)

    updated = await store.update(message.id, {"content": "final", "metadata": {"edited": True}})

    assert updated.content == "final"
    assert updated.created_at == message.created_at
    stored = (await remote.select_messages(chat.id))[0]
    assert stored.content == "final"
    assert stored.metadata == {"edited": True}


@pytest.mark.asyncio
async def test_update_guards(store, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "x", 1)
    await store.add(message)

    with pytest.raises(ValueError):
        await store.update(message.id, {"chat_id": uuid4()})
    with pytest.raises(MessageNotFoundError):
        await store.update(uuid4(), {"content": "y"})


@pytest.mark.asyncio
async def test_update_content_only_stays_local(store, remote, open_chat):
    chat = await open_chat()
    message = make_message(chat.id, "He", 1)
    await store.add(message)
    events = []
    store.subscribe(lambda event: events.append(event.kind))

    assert await store.update_content_only(message.id, "Hello")
    assert await store.update_content_only(message.id, "Hello")
    assert not await store.update_content_only(uuid4(), "nobody")

    assert store.get_message(message.id).content == "Hello"
    assert (await remote.select_messages(chat.id))[0].content == "He"
    assert events == ["content"]


@pytest.mark.asyncio
async def test_sync_keeps_writes_made_while_fetching():
    remote = GatedRemoteStore()
    store = ConversationStore(InMemoryLocalCache(), remote)
    chat = await store.create_chat(Chat(user_id="user-1"))
    await store.load(chat.id)
    await store.wait_until_synced()
    early = make_message(chat.id, "early", 1)
    await store.add(early)

    remote.gate = asyncio.Event()
    refresh = asyncio.create_task(store.refresh())
    await remote.fetching.wait()
    late = make_message(chat.id, "late", 2)
    await store.add(late)
    await store.delete(early.id)
    remote.gate.set()
    await refresh

    assert contents(store) == ["late"]


@pytest.mark.asyncio
async def test_sync_failure_keeps_local_state(store, remote, open_chat):
    chat = await open_chat()
    await store.add(make_message(chat.id, "kept", 1))
    remote.fail_select = True

    await store.refresh()

    assert contents(store) == ["kept"]


@pytest.mark.asyncio
async def test_switching_chats_discards_stale_messages(store, open_chat):
    first = await open_chat(title="first")
    await store.add(make_message(first.id, "in first", 1))
    second = await open_chat(title="second")

    assert store.chat_id == second.id
    assert store.messages == []
    assert [m.content for m in await store.fetch_messages(first.id)] == ["in first"]


@pytest.mark.asyncio
async def test_fetch_messages_falls_back_to_cache(store, cache, remote, open_chat):
    other = await store.create_chat(Chat(user_id="user-1", title="other"))
    await cache.put_message(make_message(other.id, "cached only", 1))
    await open_chat()
    remote.fail_select = True

    assert [m.content for m in await store.fetch_messages(other.id)] == ["cached only"]


@pytest.mark.asyncio
async def test_insert_messages_merges_into_active_chat(store, remote, open_chat):
    chat = await open_chat()
    await store.add(make_message(chat.id, "b", 2))

    await store.insert_messages(chat.id, [make_message(chat.id, "a", 1), make_message(chat.id, "c", 3)])

    assert contents(store) == ["a", "b", "c"]
    assert len(await remote.select_messages(chat.id)) == 3


@pytest.mark.asyncio
async def test_failed_bulk_insert_changes_nothing(store, remote, open_chat):
    chat = await open_chat()
    remote.fail_bulk_insert = True

    with pytest.raises(RemoteWriteError):
        await store.insert_messages(chat.id, [make_message(chat.id, "a", 1)])
    assert store.messages == []


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_writes(store, open_chat):
    chat = await open_chat()

    def broken(event):
        raise RuntimeError("listener bug")

    seen = []
    store.subscribe(broken)
    unsubscribe = store.subscribe(lambda event: seen.append(event.kind))
    await store.add(make_message(chat.id, "a", 1))
    unsubscribe()
    await store.add(make_message(chat.id, "b", 2))

    assert contents(store) == ["a", "b"]
    assert seen == ["added"]


@pytest.mark.asyncio
async def test_raising_listener_still_gets_writes_persisted(store, cache, remote, open_chat):
    chat = await open_chat()

    def broken(event):
        raise ValueError(event.kind)

    store.subscribe(broken)
    message = make_message(chat.id, "kept", 1)
    await store.add(message)
    await store.update(message.id, {"content": "kept and edited"})

    assert store.write_state(message.id) == WriteState.CONFIRMED
    assert (await remote.select_messages(chat.id))[0].content == "kept and edited"
    assert (await cache.get_message(message.id)).content == "kept and edited"


@pytest.mark.asyncio
async def test_messages_of_inactive_chat_are_written_through(store, cache, remote, open_chat):
    first = await open_chat(title="first")
    message = make_message(first.id, "draft", 1)
    await store.add(message)
    await open_chat(title="second")

    assert await store.update_content_only(message.id, "draft grows")
    assert (await cache.get_message(message.id)).content == "draft grows"
    assert (await remote.select_messages(first.id))[0].content == "draft"

    updated = await store.update(message.id, {"content": "final", "metadata": {"loading": False}})

    assert updated.content == "final"
    assert store.messages == []
    assert (await remote.select_messages(first.id))[0].metadata == {"loading": False}
    assert (await cache.get_message(message.id)).content == "final"


@pytest.mark.asyncio
async def test_deleted_message_is_not_written_after_chat_switch(store, cache, open_chat):
    first = await open_chat(title="first")
    message = make_message(first.id, "doomed", 1)
    await store.add(message)
    await store.delete(message.id)
    await open_chat(title="second")

    assert store.is_deleted(message.id)
    assert not await store.update_content_only(message.id, "zombie")
    with pytest.raises(MessageNotFoundError):
        await store.update(message.id, {"content": "zombie"})
    assert await cache.get_message(message.id) is None


@pytest.mark.asyncio
async def test_chat_list_orders_pinned_first(store):
    older = await store.create_chat(Chat(user_id="u", title="older", updated_at=BASE))
    newer = await store.create_chat(Chat(user_id="u", title="newer", updated_at=BASE + timedelta(days=1)))
    middle = await store.create_chat(Chat(user_id="u", title="middle", updated_at=BASE + timedelta(hours=1)))

    assert [c.title for c in store.chats] == ["newer", "middle", "older"]

    pinned = await store.toggle_pin(older.id)
    assert pinned.pinned
    assert [c.id for c in store.chats] == [older.id, newer.id, middle.id]


@pytest.mark.asyncio
async def test_failed_chat_update_is_restored(store, remote):
    chat = await store.create_chat(Chat(user_id="u", title="Before"))
    remote.fail_chat_writes = True

    with pytest.raises(RemoteWriteError):
        await store.update_chat(chat.id, {"title": "After"})
    assert store.get_chat(chat.id).title == "Before"

    with pytest.raises(ChatNotFoundError):
        await store.update_chat(uuid4(), {"title": "x"})


@pytest.mark.asyncio
async def test_failed_chat_delete_is_restored(store, remote):
    chat = await store.create_chat(Chat(user_id="u"))
    remote.fail_chat_writes = True

    with pytest.raises(RemoteWriteError):
        await store.delete_chat(chat.id)
    assert store.get_chat(chat.id) is not None


@pytest.mark.asyncio
async def test_delete_active_chat_clears_messages(store, remote, open_chat):
    chat = await open_chat()
    await store.add(make_message(chat.id, "bye", 1))

    await store.delete_chat(chat.id)

    assert store.get_chat(chat.id) is None
    assert store.messages == []
    assert await remote.select_messages(chat.id) == []


@pytest.mark.asyncio
async def test_load_chats_answers_from_cache_then_remote(store, cache, remote):
    await cache.put_chat(Chat(user_id="u", title="stale"))
    await remote.insert_chat(Chat(user_id="u", title="fresh"))
    await remote.insert_chat(Chat(user_id="someone else", title="private"))

    cached = await store.load_chats("u")
    assert [c.title for c in cached] == ["stale"]

    await store.wait_until_synced()
    assert [c.title for c in store.chats] == ["fresh"]
    assert [c.title for c in await cache.get_chats("u")] == ["fresh"]


@pytest.mark.asyncio
async def test_content_only_updates_then_one_update_match_a_single_update(cache, remote):
    streamed = ConversationStore(cache, remote)
    chat = await streamed.create_chat(Chat(user_id="u"))
    await streamed.load(chat.id)
    await streamed.wait_until_synced()
    first = await streamed.add(make_message(chat.id, "", 1, role=Role.ASSISTANT))
    second = await streamed.add(make_message(chat.id, "", 2, role=Role.ASSISTANT))

    for _ in range(3):
        await streamed.update_content_only(first.id, "final answer")
    await streamed.update(first.id, {"content": "final answer"})
    await streamed.update(second.id, {"content": "final answer"})

    rows = {m.id: m for m in await remote.select_messages(chat.id)}
    assert rows[first.id].content == rows[second.id].content == "final answer"
    assert streamed.get_message(first.id).content == streamed.get_message(second.id).content
    assert streamed.write_state(first.id) == streamed.write_state(second.id) == WriteState.CONFIRMED
