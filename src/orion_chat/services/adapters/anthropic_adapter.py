"""Anthropic messages API adapter."""

from typing import Any, AsyncIterator, Callable, Dict, Optional

from anthropic import AsyncAnthropic

from ...domain.models import CompletionRequest, CompletionResult, ModelDescriptor, Usage
from .base import ProviderAdapter, StreamEvent, split_system


class AnthropicAdapter(ProviderAdapter):
    """Adapter for Claude models; system content goes in its own parameter."""

    provider = "anthropic"

    def __init__(self, client_factory: Optional[Callable[[str], Any]] = None):
        self._client_factory = client_factory or (lambda key: AsyncAnthropic(api_key=key))

    def _params(self, request: CompletionRequest, descriptor: ModelDescriptor) -> Dict[str, Any]:
        system, conversation = split_system(request.messages)
        params: Dict[str, Any] = {
            "model": descriptor.api_model or descriptor.id,
            "messages": [{"role": m.role.value, "content": m.content} for m in conversation],
            "max_tokens": self.max_tokens_for(request, descriptor),
            "temperature": self.temperature_for(request, descriptor),
        }
        if system:
            params["system"] = system
        return params

    @staticmethod
    def _usage(message) -> Optional[Usage]:
        usage = getattr(message, "usage", None)
        if usage is None:
            return None
        return Usage(
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

    async def _complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> CompletionResult:
        client = self._client_factory(credential)
        response = await client.messages.create(**self._params(request, descriptor))

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        metadata = self.base_metadata(request, descriptor)
        metadata["finish_reason"] = response.stop_reason
        return CompletionResult(
            content=content,
            model_id=descriptor.id,
            usage=self._usage(response),
            finish_reason=response.stop_reason,
            metadata=metadata,
        )

    async def _stream_events(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> AsyncIterator[StreamEvent]:
        client = self._client_factory(credential)
        async with client.messages.stream(**self._params(request, descriptor)) as stream:
            async for text in stream.text_stream:
                yield StreamEvent(text=text)
            final = await stream.get_final_message()
            yield StreamEvent(usage=self._usage(final), finish_reason=final.stop_reason)
