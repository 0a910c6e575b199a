"""Provider adapter contract and the normalization shared by all adapters.

Concrete adapters only translate: they turn a ``CompletionRequest`` into a
provider call and report what came back as ``StreamEvent`` values. This base
class turns those events into cumulative ``CompletionChunk`` values, ends
every stream with exactly one finished chunk, falls back to a single
non-streaming call for models that cannot stream, and classifies every
failure into the error taxonomy so no provider exception type escapes.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple, Type

import structlog

from ...domain.catalog import model_type
from ...domain.errors import (
    AuthError,
    ContextLengthError,
    NetworkError,
    ProviderError,
    QuotaError,
    RateLimitError,
    UnknownProviderError,
)
from ...domain.models import (
    CompletionChunk,
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    PromptMessage,
    Role,
    Usage,
)

logger = structlog.get_logger()

# Order matters: quota errors often arrive as HTTP 429 too.
ERROR_PATTERNS: List[Tuple[Type[ProviderError], Tuple[str, ...]]] = [
    (QuotaError, ("insufficient_quota", "quota", "billing", "credit balance")),
    (AuthError, (
        "invalid_api_key", "api key not valid", "api_key_invalid", "invalid x-api-key",
        "incorrect api key", "authentication", "unauthorized", "permission denied",
    )),
    (RateLimitError, ("rate_limit", "rate limit", "too many requests", "overloaded")),
    (ContextLengthError, (
        "context_length_exceeded", "context length", "maximum context", "too long", "max_tokens",
    )),
    (NetworkError, (
        "network", "connection", "timed out", "timeout", "fetch", "econnreset", "name resolution",
    )),
]

STATUS_CODES: Dict[Type[ProviderError], Tuple[int, ...]] = {
    AuthError: (401, 403),
    RateLimitError: (429,),
}

# "Error code: 429", "status code 401", "HTTP 403"; never a bare number inside an id
STATUS_CODE_PATTERN = re.compile(r"\b(?:error code|status code|status|http)\s*:?\s*(\d{3})\b")


def _status_code(error: BaseException, text: str) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    if isinstance(status, int):
        return status
    match = STATUS_CODE_PATTERN.search(text)
    return int(match.group(1)) if match else None


def classify_error(error: BaseException, provider: str) -> ProviderError:
    """Map any provider failure onto the error taxonomy by its status code and text."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return NetworkError(str(error) or type(error).__name__, provider=provider)

    text = f"{type(error).__name__}: {error}".lower()
    status = _status_code(error, text)
    for error_cls, patterns in ERROR_PATTERNS:
        if status in STATUS_CODES.get(error_cls, ()) or any(pattern in text for pattern in patterns):
            return error_cls(str(error), provider=provider)
    return UnknownProviderError(str(error) or type(error).__name__, provider=provider)


def split_system(messages: Iterable[PromptMessage]) -> Tuple[Optional[str], List[PromptMessage]]:
    """Separate system content for providers that take it out-of-band."""
    system_parts = []
    conversation = []
    for message in messages:
        if message.role == Role.SYSTEM:
            system_parts.append(message.content)
        else:
            conversation.append(message)
    system = "\n\n".join(part for part in system_parts if part) or None
    return system, conversation


@dataclass
class StreamEvent:
    """Raw increment reported by a concrete adapter."""

    text: Optional[str] = None
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None


class ProviderAdapter(ABC):
    """Translation unit between the normalized protocol and one provider."""

    provider: str = ""

    def supports_streaming(self, descriptor: ModelDescriptor) -> bool:
        return True

    def temperature_for(self, request: CompletionRequest, descriptor: ModelDescriptor) -> float:
        if request.temperature is not None:
            return request.temperature
        return descriptor.default_temperature

    def max_tokens_for(self, request: CompletionRequest, descriptor: ModelDescriptor) -> int:
        return request.max_tokens or descriptor.max_tokens

    def base_metadata(self, request: CompletionRequest, descriptor: ModelDescriptor) -> dict:
        return {
            "model": descriptor.id,
            "provider": self.provider,
            "temperature": self.temperature_for(request, descriptor),
            "model_type": model_type(descriptor.id),
        }

    def classify(self, error: BaseException) -> ProviderError:
        return classify_error(error, self.provider)

    @abstractmethod
    async def _complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> CompletionResult:
        """Provider-specific single-shot call."""

    @abstractmethod
    def _stream_events(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> AsyncIterator[StreamEvent]:
        """Provider-specific streaming call reporting raw increments."""

    async def complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> CompletionResult:
        try:
            return await self._complete(request, descriptor, credential)
        except Exception as e:
            error = self.classify(e)
            logger.error(
                "provider_call_failed",
                provider=self.provider,
                model=descriptor.id,
                error_type=error.error_type,
                error=str(e),
            )
            raise error from e

    async def stream_complete(
        self, request: CompletionRequest, descriptor: ModelDescriptor, credential: str
    ) -> AsyncIterator[CompletionChunk]:
        if not self.supports_streaming(descriptor):
            result = await self.complete(request, descriptor, credential)
            yield CompletionChunk(
                content_so_far=result.content,
                finished=True,
                usage=result.usage,
                finish_reason=result.finish_reason,
                model_id=descriptor.id,
                metadata=result.metadata,
            )
            return

        content = ""
        usage = None
        finish_reason = None
        metadata = self.base_metadata(request, descriptor)
        events = self._stream_events(request, descriptor, credential)
        try:
            async for event in events:
                if event.usage is not None:
                    usage = event.usage
                if event.finish_reason:
                    finish_reason = event.finish_reason
                if event.text:
                    content += event.text
                    yield CompletionChunk(
                        content_so_far=content,
                        delta=event.text,
                        model_id=descriptor.id,
                        metadata=metadata,
                    )
        except Exception as e:
            error = self.classify(e)
            logger.error(
                "provider_stream_failed",
                provider=self.provider,
                model=descriptor.id,
                error_type=error.error_type,
                received_chars=len(content),
                error=str(e),
            )
            raise error from e
        finally:
            await _aclose(events)

        yield CompletionChunk(
            content_so_far=content,
            finished=True,
            usage=usage,
            finish_reason=finish_reason,
            model_id=descriptor.id,
            metadata={**metadata, "finish_reason": finish_reason},
        )


async def _aclose(iterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
