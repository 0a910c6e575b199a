"""Remote store speaking PostgREST over HTTP."""

from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import structlog
from pydantic_core import to_jsonable_python

from ..domain.models import Chat, Message, SharedChat
from .base import RemoteStore

logger = structlog.get_logger()

# Chat.summary is stored as chat_summary remotely.
_CHAT_FIELD_NAMES = {"summary": "chat_summary"}


def _message_row(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json")


def _chat_row(chat: Chat) -> Dict[str, Any]:
    return _chat_fields(chat.model_dump(mode="json"))


def _chat_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {_CHAT_FIELD_NAMES.get(k, k): v for k, v in fields.items()}


def _chat_from_row(row: Dict[str, Any]) -> Chat:
    row = dict(row)
    if "chat_summary" in row:
        row["summary"] = row.pop("chat_summary")
    return Chat.model_validate(row)


def _message_from_row(row: Dict[str, Any]) -> Message:
    row = dict(row)
    if row.get("metadata") is None:
        row["metadata"] = {}
    if row.get("content") is None:
        row["content"] = ""
    return Message.model_validate(row)


def _shared_chat_from_row(row: Dict[str, Any]) -> SharedChat:
    row = dict(row)
    if row.get("messages_snapshot") is None:
        row["messages_snapshot"] = []
    if not row.get("title"):
        row.pop("title", None)
    return SharedChat.model_validate(row)


class PostgrestRemoteStore(RemoteStore):
    """Remote store backed by the ``messages``, ``chats`` and ``shared_chats`` tables of a PostgREST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Prefer": "return=representation",
            },
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self.client.request(method, path, **kwargs)
        if response.is_error:
            logger.error(
                "remote_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def insert_message(self, message: Message) -> Message:
        await self._request("POST", "/messages", json=_message_row(message))
        return message

    async def insert_messages(self, messages: List[Message]) -> List[Message]:
        if messages:
            await self._request("POST", "/messages", json=[_message_row(m) for m in messages])
        return messages

    async def update_message(self, message_id: UUID, fields: Dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            "/messages",
            params={"id": f"eq.{message_id}"},
            json=to_jsonable_python(fields),
        )

    async def delete_message(self, message_id: UUID) -> None:
        await self._request("DELETE", "/messages", params={"id": f"eq.{message_id}"})

    async def select_messages(self, chat_id: UUID) -> List[Message]:
        rows = await self._request(
            "GET",
            "/messages",
            params={"select": "*", "chat_id": f"eq.{chat_id}", "order": "created_at.asc"},
        )
        return [_message_from_row(row) for row in rows or []]

    async def insert_chat(self, chat: Chat) -> Chat:
        rows = await self._request("POST", "/chats", json=_chat_row(chat))
        if rows:
            return _chat_from_row(rows[0])
        return chat

    async def update_chat(self, chat_id: UUID, fields: Dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            "/chats",
            params={"id": f"eq.{chat_id}"},
            json=_chat_fields(to_jsonable_python(fields)),
        )

    async def delete_chat(self, chat_id: UUID) -> None:
        # messages cascade on the server
        await self._request("DELETE", "/chats", params={"id": f"eq.{chat_id}"})

    async def select_chats(self, user_id: str) -> List[Chat]:
        rows = await self._request(
            "GET",
            "/chats",
            params={"select": "*", "user_id": f"eq.{user_id}", "order": "updated_at.desc"},
        )
        return [_chat_from_row(row) for row in rows or []]

    async def insert_shared_chat(self, shared: SharedChat) -> SharedChat:
        rows = await self._request("POST", "/shared_chats", json=shared.model_dump(mode="json"))
        if rows:
            return _shared_chat_from_row(rows[0])
        return shared

    async def select_shared_chat(self, shared_chat_id: UUID) -> Optional[SharedChat]:
        rows = await self._request(
            "GET",
            "/shared_chats",
            params={"select": "*", "id": f"eq.{shared_chat_id}"},
        )
        if not rows:
            return None
        return _shared_chat_from_row(rows[0])
