"""OpenAI chat completions adapter, also the base for OpenAI-compatible APIs."""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from openai import AsyncOpenAI

from ...domain.catalog import is_reasoning_model
from ...domain.models import (
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    PromptMessage,
    Usage,
)
from .base import ProviderAdapter, StreamEvent


class OpenAIAdapter(ProviderAdapter):
    """Adapter for OpenAI chat completions."""

    provider = "openai"
    base_url: Optional[str] = None

    def __init__(self, client_factory: Optional[Callable[[str], Any]] = None):
        self._client_factory = client_factory or self._default_client

    def _default_client(self, credential: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=credential, base_url=self.base_url)

    def supports_streaming(self, descriptor: ModelDescriptor) -> bool:
        return not is_reasoning_model(descriptor.id)

    def _messages(self, messages: List[PromptMessage]) -> List[Dict[str, str]]:
        return [{"role": m.role.value, "content": m.content} for m in messages]

    def _params(self, request: CompletionRequest, descriptor: ModelDescriptor) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": descriptor.api_model or descriptor.id,
            "messages": self._messages(request.messages),
        }
        max_tokens = self.max_tokens_for(request, descriptor)
        if is_reasoning_model(descriptor.id):
            # o-series rejects temperature and the legacy max_tokens name
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
            params["temperature"] = self.temperature_for(request, descriptor)
        return params

    async def _complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> CompletionResult:
        client = self._client_factory(credential)
        response = await client.chat.completions.create(**self._params(request, descriptor))

        choice = response.choices[0] if response.choices else None
        content = (choice.message.content if choice else None) or ""
        finish_reason = choice.finish_reason if choice else None
        usage = None
        if getattr(response, "usage", None) is not None:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )

        metadata = self.base_metadata(request, descriptor)
        metadata["finish_reason"] = finish_reason
        return CompletionResult(
            content=content,
            model_id=descriptor.id,
            usage=usage,
            finish_reason=finish_reason,
            metadata=metadata,
        )

    async def _stream_events(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> AsyncIterator[StreamEvent]:
        client = self._client_factory(credential)
        stream = await client.chat.completions.create(
            **self._params(request, descriptor),
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                event = StreamEvent()
                if getattr(chunk, "usage", None) is not None:
                    event.usage = Usage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if chunk.choices:
                    choice = chunk.choices[0]
                    event.text = choice.delta.content if choice.delta else None
                    event.finish_reason = choice.finish_reason
                yield event
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()
