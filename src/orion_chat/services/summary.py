"""Conversation summaries stored on the chat and fed back into the system prompt."""

import math
from typing import Iterable, List, Optional, Union
from uuid import UUID

import structlog

from ..domain.catalog import DEFAULT_MODEL_ID
from ..domain.models import Chat, CompletionRequest, Message, PromptMessage, Role
from .context import to_prompt_messages
from .conversation_store import ConversationStore
from .dispatcher import CredentialSource, Dispatcher

logger = structlog.get_logger()

SUMMARY_TEMPERATURE = 0.3

BASE_PROMPT = "You are a helpful assistant that creates concise, informative summaries of conversations. "


def create_prompt(max_words: int) -> str:
    return (
        f"{BASE_PROMPT}Please analyze the following conversation and create a clear, "
        "comprehensive summary that captures:\n\n"
        "1. The main topics discussed\n"
        "2. Key questions asked and answers provided\n"
        "3. Important decisions or conclusions reached\n"
        "4. Any action items or next steps mentioned\n\n"
        f"Keep the summary concise but informative, around {max_words} words or less. "
        "Focus on the most important and relevant information.\n\n"
        "Conversation to summarize:"
    )


def update_prompt(current_summary: str, max_words: int) -> str:
    return (
        f"{BASE_PROMPT}I have an existing conversation summary and some new messages. "
        "Please update the summary to include the new information while maintaining "
        "coherence and keeping it concise.\n\n"
        f"Current summary:\n{current_summary}\n\n"
        "Please analyze the new messages below and create an updated summary that:\n"
        "1. Incorporates the new information\n"
        "2. Maintains the context from the existing summary\n"
        "3. Removes any redundant information\n"
        f"4. Stays around {max_words} words or less\n\n"
        "New messages to incorporate:"
    )


def format_transcript(messages: Iterable[PromptMessage]) -> str:
    """Numbered User/Assistant transcript without system messages."""
    lines = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        speaker = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"{len(lines) + 1}. {speaker}: {message.content}")
    return "\n\n".join(lines)


class ConversationSummarizer:
    """Summarizes chats with a single non-streaming completion."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        store: Optional[ConversationStore] = None,
        credentials: Optional[CredentialSource] = None,
        model_id: str = DEFAULT_MODEL_ID,
        max_words: int = 200,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.credentials = credentials
        self.model_id = model_id
        self.max_words = max_words

    async def _complete(self, system_prompt: str, transcript: str) -> str:
        request = CompletionRequest(
            model_id=self.model_id,
            messages=[
                PromptMessage(role=Role.SYSTEM, content=system_prompt),
                PromptMessage(role=Role.USER, content=transcript),
            ],
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=math.ceil(self.max_words * 1.5),
        )
        result = await self.dispatcher.complete(request, self.credentials)
        return result.content.strip()

    async def create_summary(self, messages: List[Union[Message, PromptMessage]]) -> str:
        if not messages:
            raise ValueError("No messages provided for summarization")
        transcript = format_transcript(to_prompt_messages(messages))
        return await self._complete(create_prompt(self.max_words), transcript)

    async def update_summary(
        self, current_summary: str, new_messages: List[Union[Message, PromptMessage]]
    ) -> str:
        if not current_summary.strip():
            raise ValueError("Current summary is required for update")
        if not new_messages:
            raise ValueError("No new messages provided for summary update")
        transcript = format_transcript(to_prompt_messages(new_messages))
        return await self._complete(update_prompt(current_summary, self.max_words), transcript)

    async def summarize_chat(self, chat_id: UUID) -> Chat:
        """Create or refresh the summary of a known chat and store it."""
        if self.store is None:
            raise ValueError("A store is required to summarize a chat")
        messages = await self.store.fetch_messages(chat_id)
        summary = await self.create_summary(messages)
        chat = await self.store.update_chat(chat_id, {"summary": summary})
        logger.info("chat_summarized", chat_id=str(chat_id), length=len(summary))
        return chat
