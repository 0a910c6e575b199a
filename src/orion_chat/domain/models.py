"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware current time used for every timestamp."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Logical speaker of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MessageType(str, Enum):
    """Whether a message holds normal text or a recorded failure."""

    TEXT = "text"
    ERROR = "error"


class WriteState(str, Enum):
    """Lifecycle of an optimistic write against the remote store."""

    PENDING_LOCAL = "pending-local"
    CONFIRMED = "confirmed"
    REJECTED_REVERTED = "rejected-reverted"


class Chat(BaseModel):
    """Chat model."""

    id: UUID = Field(default_factory=uuid4)
    title: str = "New conversation"
    user_id: str
    pinned: bool = False
    parent_chat_id: Optional[UUID] = None  # set for branches
    summary: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID
    role: Role = Role.USER
    content: str = ""
    type: MessageType = MessageType.TEXT
    parent_message_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_error(self) -> bool:
        return self.type == MessageType.ERROR


class SharedMessage(BaseModel):
    """Message as frozen into a shared snapshot."""

    id: UUID
    role: Role
    content: str = ""
    type: MessageType = MessageType.TEXT
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SharedChat(BaseModel):
    """Read-only snapshot of a chat, published under its own id."""

    id: UUID = Field(default_factory=uuid4)
    original_chat_id: UUID
    owner_user_id: str
    title: str = "Shared conversation"
    messages_snapshot: List[SharedMessage] = Field(default_factory=list)
    expires_at: Optional[datetime] = None  # never expires when unset
    created_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or utc_now())


class ModelDescriptor(BaseModel):
    """Static registry entry describing one model of one provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    provider: str
    display_name: str
    max_tokens: int = 4096
    default_temperature: float = 0.7
    category: Optional[str] = None
    api_model: Optional[str] = None  # provider-side name when it differs from id


class Usage(BaseModel):
    """Token accounting reported by a provider."""

    input_tokens: int = 0
    output_tokens: int = 0


class PromptMessage(BaseModel):
    """One entry of the normalized prompt sent to a provider."""

    role: Role
    content: str


class CompletionRequest(BaseModel):
    """Normalized request accepted by the dispatcher."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    messages: List[PromptMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False


class CompletionResult(BaseModel):
    """Normalized non-streaming response."""

    model_config = ConfigDict(protected_namespaces=())

    content: str
    model_id: str
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompletionChunk(BaseModel):
    """Normalized streaming increment; content_so_far is cumulative."""

    model_config = ConfigDict(protected_namespaces=())

    content_so_far: str
    delta: Optional[str] = None
    finished: bool = False
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None
    model_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatSettings(BaseModel):
    """User-facing generation settings passed explicitly into prompt assembly."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    assistant_name: str = "Orion"
    display_name: Optional[str] = None
    personality: Optional[str] = None
    custom_instructions: Optional[str] = None
    enable_system_prompt: bool = True
    max_prompt_length: int = 4000
