"""Routes normalized completion requests to the adapter owning the model."""

from typing import AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from ..domain.catalog import ALL_MODELS
from ..domain.errors import (
    MissingCredentialError,
    ModelNotFoundError,
    ProviderError,
    UnknownProviderError,
)
from ..domain.models import CompletionChunk, CompletionRequest, CompletionResult, ModelDescriptor
from .adapters.anthropic_adapter import AnthropicAdapter
from .adapters.base import ProviderAdapter
from .adapters.deepseek_adapter import DeepSeekAdapter
from .adapters.google_adapter import GoogleAdapter
from .adapters.openai_adapter import OpenAIAdapter

logger = structlog.get_logger()

CredentialSource = Union[Mapping[str, str], Callable[[str], Optional[str]]]


def default_adapters() -> List[ProviderAdapter]:
    """One adapter per supported provider."""
    return [OpenAIAdapter(), AnthropicAdapter(), GoogleAdapter(), DeepSeekAdapter()]


def get_credential(credentials: Optional[CredentialSource], provider: str) -> Optional[str]:
    if credentials is None:
        return None
    if callable(credentials):
        return credentials(provider)
    return credentials.get(provider)


class Dispatcher:
    """Model registry plus per-call credential resolution.

    Holds no per-request state: credentials are looked up on every call and
    nothing is retried.
    """

    def __init__(
        self,
        adapters: Optional[Iterable[ProviderAdapter]] = None,
        descriptors: Iterable[ModelDescriptor] = ALL_MODELS,
    ):
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._models: Dict[str, ModelDescriptor] = {}
        for adapter in default_adapters() if adapters is None else adapters:
            self.register_adapter(adapter)
        for descriptor in descriptors:
            self.register_model(descriptor)

    def register_adapter(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def register_model(self, descriptor: ModelDescriptor) -> None:
        self._models[descriptor.id] = descriptor

    def available_models(self) -> List[ModelDescriptor]:
        """Registered models whose provider has an adapter."""
        return [m for m in self._models.values() if m.provider in self._adapters]

    def resolve(self, model_id: str) -> Tuple[ModelDescriptor, ProviderAdapter]:
        descriptor = self._models.get(model_id)
        if descriptor is None:
            logger.warning("model_not_found", model=model_id)
            raise ModelNotFoundError(model_id)
        adapter = self._adapters.get(descriptor.provider)
        if adapter is None:
            raise UnknownProviderError(
                f"Provider {descriptor.provider} not supported", provider=descriptor.provider
            )
        return descriptor, adapter

    def _prepare(
        self, request: CompletionRequest, credentials: Optional[CredentialSource]
    ) -> Tuple[ModelDescriptor, ProviderAdapter, str]:
        descriptor, adapter = self.resolve(request.model_id)
        credential = get_credential(credentials, descriptor.provider)
        if not credential:
            raise MissingCredentialError(
                f"No API key found for provider: {descriptor.provider}. "
                "Please add an API key in Settings.",
                provider=descriptor.provider,
            )
        return descriptor, adapter, credential

    async def complete(
        self, request: CompletionRequest, credentials: Optional[CredentialSource]
    ) -> CompletionResult:
        descriptor, adapter, credential = self._prepare(request, credentials)
        logger.info("completion_started", model=descriptor.id, provider=descriptor.provider)
        try:
            return await adapter.complete(request, descriptor, credential)
        except ProviderError as e:
            raise e.with_context(f"Failed to get response from {descriptor.display_name}") from e

    async def stream_complete(
        self, request: CompletionRequest, credentials: Optional[CredentialSource]
    ) -> AsyncIterator[CompletionChunk]:
        descriptor, adapter, credential = self._prepare(request, credentials)
        logger.info("stream_started", model=descriptor.id, provider=descriptor.provider)
        chunks = adapter.stream_complete(request, descriptor, credential)
        try:
            async for chunk in chunks:
                yield chunk
        except ProviderError as e:
            raise e.with_context(f"Failed to get response from {descriptor.display_name}") from e
        finally:
            await chunks.aclose()
