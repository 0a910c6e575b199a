"""System prompt assembly."""

from typing import Iterable, List, Optional, Union

from ..domain.catalog import get_model_by_id, is_reasoning_model
from ..domain.models import ChatSettings, Message, PromptMessage, Role

TRUNCATION_NOTICE = "[Additional context truncated...]"

FORMATTING_GUIDELINES = """## Response Guidelines
- Always respond in Markdown format unless specifically asked to use a different format
- Use clear, well-structured responses with appropriate headings and formatting
- Format code blocks with appropriate syntax highlighting and language tags
- Be concise but thorough in explanations
- Ask clarifying questions when needed
- Provide examples when helpful

## Mathematical Expressions
- Always use LaTeX for mathematical expressions
- Inline math must be wrapped in escaped parentheses: \\(content\\)
- Display math must be wrapped in double dollar signs: $$content$$"""


def _identity(settings: ChatSettings) -> str:
    identity = f"You are {settings.assistant_name}, a helpful and intelligent AI assistant."
    descriptor = get_model_by_id(settings.model_id) if settings.model_id else None
    if descriptor is None:
        return identity + (
            " You are designed to be conversational, knowledgeable, and adaptable"
            " to the user's needs and preferences."
        )

    identity += f" You are powered by the {descriptor.display_name} model."
    if is_reasoning_model(descriptor.id):
        identity += " You are a reasoning model, so take time to think through problems step by step."
    identity += (
        f"\n\nIf you are specifically asked about the model you are using, you may mention"
        f" that you use the {descriptor.display_name} model."
    )
    return identity


def _personality(settings: ChatSettings) -> Optional[str]:
    parts = []
    if settings.display_name:
        parts.append(f"The user's name is {settings.display_name}.")
    if settings.personality:
        parts.append(f"Your personality should be: {settings.personality}.")
    if not parts:
        return None
    return "## User Context & Assistant Personality\n" + " ".join(parts)


def truncate_prompt(prompt: str, max_length: int) -> str:
    """Keep whole sections from the start while they fit."""
    if len(prompt) <= max_length:
        return prompt
    kept = ""
    for section in prompt.split("\n\n"):
        candidate = f"{kept}\n\n{section}" if kept else section
        if len(candidate) > max_length:
            break
        kept = candidate
    notice = f"\n\n{TRUNCATION_NOTICE}" if kept else TRUNCATION_NOTICE
    if len(kept) + len(notice) <= max_length:
        return kept + notice
    return kept or prompt[:max_length]


def build_system_prompt(settings: ChatSettings, summary: Optional[str] = None) -> str:
    sections = [_identity(settings)]
    personality = _personality(settings)
    if personality:
        sections.append(personality)
    sections.append(FORMATTING_GUIDELINES)
    if settings.custom_instructions:
        sections.append(f"## Custom Instructions\n{settings.custom_instructions}")
    if summary:
        sections.append(f"## Conversation Summary\n{summary}")
    return truncate_prompt("\n\n".join(sections), settings.max_prompt_length)


def to_prompt_messages(history: Iterable[Union[Message, PromptMessage]]) -> List[PromptMessage]:
    """Normalize history, leaving out recorded errors."""
    prompt = []
    for message in history:
        if isinstance(message, Message):
            if message.is_error:
                continue
            message = PromptMessage(role=message.role, content=message.content)
        prompt.append(message)
    return prompt


def build_prompt(
    history: Iterable[Union[Message, PromptMessage]],
    settings: ChatSettings,
    summary: Optional[str] = None,
) -> List[PromptMessage]:
    """Prompt for a provider: history with one leading system message.

    An existing system message is replaced. With the system prompt disabled
    the history is returned as is.
    """
    messages = to_prompt_messages(history)
    if not settings.enable_system_prompt:
        return messages

    system = PromptMessage(role=Role.SYSTEM, content=build_system_prompt(settings, summary))
    return [system] + [m for m in messages if m.role != Role.SYSTEM]
