"""Google Gemini adapter."""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions

from ...domain.errors import (
    AuthError,
    ContextLengthError,
    NetworkError,
    ProviderError,
    QuotaError,
    RateLimitError,
)
from ...domain.models import (
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    PromptMessage,
    Role,
    Usage,
)
from .base import ProviderAdapter, StreamEvent, classify_error, split_system


def _default_model_factory(credential: str, model_name: str, system_instruction: Optional[str]):
    genai.configure(api_key=credential)
    return genai.GenerativeModel(model_name, system_instruction=system_instruction)


class GoogleAdapter(ProviderAdapter):
    """Adapter for Gemini models.

    System content becomes ``system_instruction`` and the assistant role is
    renamed ``model``. Blocked or empty candidates yield no text
    instead of raising.
    """

    provider = "google"

    def __init__(self, model_factory: Optional[Callable[..., Any]] = None):
        self._model_factory = model_factory or _default_model_factory

    def _model(self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str):
        system, _ = split_system(request.messages)
        return self._model_factory(credential, descriptor.api_model or descriptor.id, system)

    @staticmethod
    def _contents(messages: List[PromptMessage]) -> List[Dict[str, Any]]:
        _, conversation = split_system(messages)
        return [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [m.content],
            }
            for m in conversation
        ]

    def _generation_config(self, request: CompletionRequest, descriptor: ModelDescriptor) -> Dict[str, Any]:
        return {
            "temperature": self.temperature_for(request, descriptor),
            "max_output_tokens": self.max_tokens_for(request, descriptor),
        }

    @staticmethod
    def _text(response) -> str:
        parts = []
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                text = getattr(part, "text", None)
                if text:
                    parts.append(text)
            # only the first candidate is used
            break
        return "".join(parts)

    @staticmethod
    def _finish_reason(response) -> Optional[str]:
        for candidate in getattr(response, "candidates", None) or []:
            reason = getattr(candidate, "finish_reason", None)
            if reason is None:
                return None
            return getattr(reason, "name", None) or str(reason)
        return None

    @staticmethod
    def _usage(response) -> Optional[Usage]:
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return None
        return Usage(
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        )

    def classify(self, error: BaseException) -> ProviderError:
        if isinstance(error, ProviderError):
            return error
        message = str(error)
        if isinstance(error, exceptions.ResourceExhausted):
            if "quota" in message.lower():
                return QuotaError(message, provider=self.provider)
            return RateLimitError(message, provider=self.provider)
        if isinstance(error, (exceptions.Unauthenticated, exceptions.PermissionDenied)):
            return AuthError(message, provider=self.provider)
        if isinstance(error, (exceptions.DeadlineExceeded, exceptions.ServiceUnavailable)):
            return NetworkError(message, provider=self.provider)
        if isinstance(error, exceptions.InvalidArgument) and "token" in message.lower():
            return ContextLengthError(message, provider=self.provider)
        return classify_error(error, self.provider)

    async def _complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> CompletionResult:
        model = self._model(request, descriptor, credential)
        response = await model.generate_content_async(
            self._contents(request.messages),
            generation_config=self._generation_config(request, descriptor),
        )
        finish_reason = self._finish_reason(response)
        metadata = self.base_metadata(request, descriptor)
        metadata["finish_reason"] = finish_reason
        return CompletionResult(
            content=self._text(response),
            model_id=descriptor.id,
            usage=self._usage(response),
            finish_reason=finish_reason,
            metadata=metadata,
        )

    async def _stream_events(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> AsyncIterator[StreamEvent]:
        model = self._model(request, descriptor, credential)
        response = await model.generate_content_async(
            self._contents(request.messages),
            generation_config=self._generation_config(request, descriptor),
            stream=True,
        )
        async for chunk in response:
            yield StreamEvent(
                text=self._text(chunk),
                usage=self._usage(chunk),
                finish_reason=self._finish_reason(chunk),
            )
