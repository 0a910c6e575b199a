"""Error taxonomy shared by adapters, dispatcher, store and mutation engine."""

from typing import Optional

ERROR_HEADING = "❌ **Error Processing Request**"


class ChatError(Exception):
    """Base class for every failure raised by the orchestration core."""

    error_type = "UNKNOWN_ERROR"
    user_message = "Something went wrong while processing your request. Please try again."

    def display_text(self) -> str:
        """Readable text stored in an error message."""
        return f"{ERROR_HEADING}\n\n{self.user_message}"


class ProviderError(ChatError):
    """Failure reported by an LLM provider, already classified."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider

    def with_context(self, context: str) -> "ProviderError":
        """Same error type, message prefixed with the caller's context."""
        wrapped = type(self)(f"{context}: {self}", provider=self.provider)
        wrapped.__cause__ = self
        return wrapped


class AuthError(ProviderError):
    error_type = "API_KEY_ERROR"
    user_message = "Invalid API key. Please check your API key configuration in Settings."


class MissingCredentialError(AuthError):
    user_message = "No API key found for this provider. Please add an API key in Settings."


class RateLimitError(ProviderError):
    error_type = "RATE_LIMIT_ERROR"
    user_message = "Rate limit exceeded. Please wait a moment before trying again."


class QuotaError(ProviderError):
    error_type = "QUOTA_ERROR"
    user_message = "API quota exceeded. Please check your account billing and usage limits."


class ContextLengthError(ProviderError):
    error_type = "CONTEXT_LENGTH_ERROR"
    user_message = (
        "Message too long for this model. Please try a shorter message "
        "or use a model with a larger context window."
    )


class NetworkError(ProviderError):
    error_type = "NETWORK_ERROR"
    user_message = "Network connection error. Please check your internet connection and try again."


class UnknownProviderError(ProviderError):
    error_type = "UNKNOWN_ERROR"


class ModelNotFoundError(ChatError):
    error_type = "MODEL_NOT_FOUND"
    user_message = "The selected model is not available. Please choose another model."

    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} not found")
        self.model_id = model_id


class RemoteWriteError(ChatError):
    error_type = "REMOTE_WRITE_ERROR"
    user_message = "Your change could not be saved. Please check your connection and try again."


class MessageNotFoundError(ChatError, LookupError):
    error_type = "MESSAGE_NOT_FOUND"

    def __init__(self, message_id):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class ChatNotFoundError(ChatError, LookupError):
    error_type = "CHAT_NOT_FOUND"

    def __init__(self, chat_id):
        super().__init__(f"Chat {chat_id} not found")
        self.chat_id = chat_id


class SharedChatNotFoundError(ChatError, LookupError):
    error_type = "SHARED_CHAT_NOT_FOUND"

    def __init__(self, shared_chat_id):
        super().__init__(f"Shared chat {shared_chat_id} not found")
        self.shared_chat_id = shared_chat_id


class SharedChatExpiredError(ChatError):
    error_type = "SHARED_CHAT_EXPIRED"
    user_message = "This shared conversation has expired."

    def __init__(self, shared_chat_id):
        super().__init__(f"Shared chat {shared_chat_id} has expired")
        self.shared_chat_id = shared_chat_id


def error_type_of(error: BaseException) -> str:
    """Stable error code for metadata; unclassified errors are UNKNOWN_ERROR."""
    if isinstance(error, ChatError):
        return error.error_type
    return ChatError.error_type


def display_text_of(error: BaseException) -> str:
    if isinstance(error, ChatError):
        return error.display_text()
    return ChatError().display_text()
