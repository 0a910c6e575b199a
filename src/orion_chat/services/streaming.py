"""Incremental persistence of a streamed response."""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set
from uuid import UUID

import structlog

from ..domain.errors import MessageNotFoundError, RemoteWriteError
from ..domain.models import CompletionChunk, Message
from .conversation_store import ConversationStore

logger = structlog.get_logger()

DEFAULT_PERSIST_INTERVAL = 0.3


class DebouncedWriter:
    """Owns the durable writes of one stream.

    ``write_soon`` starts a write right away, ``schedule`` (re)arms a timer
    that writes the latest content once the stream has been quiet for
    ``interval`` seconds. Writes never overlap and never block the caller.
    """

    def __init__(self, write: Callable[[str], Awaitable[None]], interval: float = DEFAULT_PERSIST_INTERVAL):
        self._write = write
        self.interval = interval
        self._timer: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def write_soon(self, content: str) -> None:
        task = asyncio.create_task(self._run(content))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def schedule(self, content: str) -> None:
        self.cancel_pending()
        self._timer = asyncio.create_task(self._fire_later(content))

    def cancel_pending(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def settle(self) -> None:
        """Drop the armed timer and wait for writes already running."""
        self.cancel_pending()
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def _fire_later(self, content: str) -> None:
        await asyncio.sleep(self.interval)
        # from here on the write is in flight and no longer cancellable by schedule()
        task = asyncio.current_task()
        self._running.add(task)
        if self._timer is task:
            self._timer = None
        try:
            await self._run(content)
        finally:
            self._running.discard(task)

    async def _run(self, content: str) -> None:
        async with self._lock:
            try:
                await self._write(content)
            except (RemoteWriteError, MessageNotFoundError) as e:
                logger.warning("intermediate_write_failed", error=str(e))


async def consume_stream(
    store: ConversationStore,
    message_id: UUID,
    chunks: AsyncIterator[CompletionChunk],
    interval: float = DEFAULT_PERSIST_INTERVAL,
    final_metadata: Optional[Callable[[CompletionChunk], Dict]] = None,
) -> Optional[Message]:
    """Feed ``chunks`` into the placeholder ``message_id``.

    Returns the final message, or None when the placeholder was deleted while
    streaming; the stream is then closed and its remaining chunks dropped.
    The stream keeps going when the user switches to another chat, and the
    placeholder is then written through the cache and the remote store.
    Provider errors propagate to the caller.
    """
    latest = ""

    async def write(content: str) -> None:
        # ``content`` may be older than what already streamed in; never write it back
        if not store.is_deleted(message_id):
            await store.update(message_id, {"content": latest})

    writer = DebouncedWriter(write, interval)
    last: Optional[CompletionChunk] = None
    first = True
    try:
        async for chunk in chunks:
            if not await store.update_content_only(message_id, chunk.content_so_far):
                logger.info("stale_stream_dropped", message_id=str(message_id))
                writer.cancel_pending()
                await _close(chunks)
                return None
            latest = chunk.content_so_far
            last = chunk
            if chunk.finished:
                break
            if first:
                writer.write_soon(chunk.content_so_far)
                first = False
            else:
                writer.schedule(chunk.content_so_far)
    finally:
        await writer.settle()

    current = await store.find_message(message_id)
    if current is None:
        return None

    fields = {"content": latest}
    if final_metadata is not None:
        metadata = dict(current.metadata)
        metadata.update(final_metadata(last) if last is not None else {})
        fields["metadata"] = metadata
    return await store.update(message_id, fields)


async def _close(chunks) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()
