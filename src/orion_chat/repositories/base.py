"""Storage interfaces: the local embedded cache and the remote store."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..domain.models import Chat, Message, SharedChat


class LocalCache(ABC):
    """Fast local copy of messages and chats; never the source of truth."""

    @abstractmethod
    async def get_chat_messages(self, chat_id: UUID) -> List[Message]:
        """Get all cached messages of a chat ordered by created_at."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Get a cached message by ID."""
        pass

    @abstractmethod
    async def put_message(self, message: Message) -> None:
        """Insert or replace a message."""
        pass

    @abstractmethod
    async def put_messages(self, messages: List[Message]) -> None:
        """Insert or replace many messages."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None:
        """Delete a message; unknown IDs are ignored."""
        pass

    @abstractmethod
    async def delete_chat_messages(self, chat_id: UUID) -> None:
        """Delete every message of a chat."""
        pass

    @abstractmethod
    async def get_chats(self, user_id: str) -> List[Chat]:
        """Get cached chats of a user."""
        pass

    @abstractmethod
    async def put_chat(self, chat: Chat) -> None:
        """Insert or replace a chat."""
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: UUID) -> None:
        """Delete a chat and its messages."""
        pass

    @abstractmethod
    async def replace_chats(self, user_id: str, chats: List[Chat]) -> None:
        """Replace the cached chat list of a user."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Drop everything."""
        pass


class RemoteStore(ABC):
    """Durable store; every write may fail."""

    @abstractmethod
    async def insert_message(self, message: Message) -> Message:
        """Insert a message; duplicate IDs are rejected."""
        pass

    @abstractmethod
    async def insert_messages(self, messages: List[Message]) -> List[Message]:
        """Insert many messages in one request."""
        pass

    @abstractmethod
    async def update_message(self, message_id: UUID, fields: Dict[str, Any]) -> None:
        """Update selected fields of a message."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None:
        """Delete a message."""
        pass

    @abstractmethod
    async def select_messages(self, chat_id: UUID) -> List[Message]:
        """Get all messages of a chat ordered by created_at."""
        pass

    @abstractmethod
    async def insert_chat(self, chat: Chat) -> Chat:
        """Insert a chat."""
        pass

    @abstractmethod
    async def update_chat(self, chat_id: UUID, fields: Dict[str, Any]) -> None:
        """Update selected fields of a chat."""
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: UUID) -> None:
        """Delete a chat and its messages."""
        pass

    @abstractmethod
    async def select_chats(self, user_id: str) -> List[Chat]:
        """Get chats of a user, most recently updated first."""
        pass

    @abstractmethod
    async def insert_shared_chat(self, shared: SharedChat) -> SharedChat:
        """Publish a chat snapshot."""
        pass

    @abstractmethod
    async def select_shared_chat(self, shared_chat_id: UUID) -> Optional[SharedChat]:
        """Get a published snapshot by ID, or None."""
        pass
