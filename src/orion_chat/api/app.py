"""
FastAPI Application Module

HTTP surface of the chat engine: chats, messages and the conversation
mutations (send, retry, edit, branch, share, delete), plus a stateless completion
endpoint streaming Server-Sent Events.

Key Features:
- Local-first persistence with a remote store behind every write
- Provider errors recorded as chat messages, never as 500s
- Structured logging and metrics
- CORS and OpenTelemetry support
"""

import json
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional
from uuid import UUID

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from ..config import AppConfig, EnvCredentials, configure_logging
from ..domain.errors import (
    AuthError,
    ChatError,
    ChatNotFoundError,
    MessageNotFoundError,
    ModelNotFoundError,
    SharedChatExpiredError,
    SharedChatNotFoundError,
)
from ..domain.models import (
    Chat,
    CompletionRequest,
    CompletionResult,
    Message,
    ModelDescriptor,
    PromptMessage,
    SharedChat,
)
from ..repositories.base import LocalCache, RemoteStore
from ..repositories.memory import InMemoryRemoteStore
from ..repositories.rest import PostgrestRemoteStore
from ..repositories.sqlite import SqliteLocalCache
from ..services.dispatcher import CredentialSource, Dispatcher
from .sessions import ChatSessions

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
GENERATIONS = Counter(
    "generations_total", "Generated replies by outcome", ["outcome"], registry=CUSTOM_REGISTRY
)
PROCESSING_TIME = Counter("processing_time_seconds", "Total request processing time", registry=CUSTOM_REGISTRY)

logger = get_logger()


class ChatCreate(BaseModel):
    title: str = "New conversation"


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    model_config = ConfigDict(protected_namespaces=())

    content: str
    model_id: Optional[str] = None


class RetryRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None


class ShareRequest(BaseModel):
    expires_in_days: Optional[int] = Field(default=None, ge=1)


class SharedChatView(BaseModel):
    """A shared snapshot; expired snapshots carry no messages."""

    shared_chat: SharedChat
    expired: bool = False


class ChatCompletionBody(BaseModel):
    """Body of the stateless completion endpoint."""

    model: str
    messages: List[PromptMessage] = Field(min_length=1)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    api_keys: Optional[Dict[str, Optional[str]]] = None


def http_error(e: Exception, event: str, **context) -> HTTPException:
    """Translate a core failure into an HTTP error and log it."""
    ERRORS.inc()
    if isinstance(e, (MessageNotFoundError, ChatNotFoundError, ModelNotFoundError, SharedChatNotFoundError)):
        logger.warning(event, error=str(e), **context)
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SharedChatExpiredError):
        logger.warning(event, error=str(e), **context)
        return HTTPException(status_code=410, detail=e.user_message)
    if isinstance(e, AuthError):
        logger.warning(event, error=str(e), **context)
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, ValueError):
        logger.warning(event, error=str(e), **context)
        return HTTPException(status_code=400, detail=str(e))
    logger.error(event, error=str(e), **context)
    if isinstance(e, ChatError):
        return HTTPException(status_code=502, detail=e.user_message)
    return HTTPException(status_code=500, detail="Internal error")


def _reply(message: Optional[Message]) -> Message:
    if message is None:
        GENERATIONS.labels(outcome="discarded").inc()
        raise HTTPException(status_code=409, detail="The response was discarded by a newer change")
    GENERATIONS.labels(outcome="error" if message.is_error else "ok").inc()
    return message


def _merged_credentials(fallback: Optional[CredentialSource], overrides: Optional[Dict[str, Optional[str]]]):
    def get_credential(provider: str) -> Optional[str]:
        if overrides and overrides.get(provider):
            return overrides[provider]
        if fallback is None:
            return None
        if callable(fallback):
            return fallback(provider)
        return fallback.get(provider)

    return get_credential


def default_storage(config: AppConfig):
    cache = SqliteLocalCache(config.cache_path)
    if config.remote_url and config.remote_key:
        remote = PostgrestRemoteStore(config.remote_url, config.remote_key)
    else:
        remote = InMemoryRemoteStore()
    return cache, remote


def create_app(
    config: Optional[AppConfig] = None,
    dispatcher: Optional[Dispatcher] = None,
    cache: Optional[LocalCache] = None,
    remote: Optional[RemoteStore] = None,
    credentials: Optional[CredentialSource] = None,
) -> FastAPI:
    """Build the application; every collaborator can be injected."""
    config = config or AppConfig.from_env()
    if cache is None or remote is None:
        default_cache, default_remote = default_storage(config)
        cache = cache or default_cache
        remote = remote or default_remote
    sessions = ChatSessions(
        config,
        dispatcher or Dispatcher(),
        cache,
        remote,
        credentials=credentials if credentials is not None else EnvCredentials(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete", remote=type(remote).__name__)
        yield
        if isinstance(remote, PostgrestRemoteStore):
            await remote.aclose()
        if isinstance(cache, SqliteLocalCache):
            cache.close()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Orion Chat API",
        description="Multi-provider chat orchestration with local-first persistence",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sessions = sessions

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    def get_sessions(request: Request) -> ChatSessions:
        """Returns the session registry of this app"""
        return request.app.state.sessions

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and their processing time"""
        REQUESTS.inc()
        started = time.perf_counter()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        finally:
            PROCESSING_TIME.inc(time.perf_counter() - started)

    @app.get("/models", response_model=List[ModelDescriptor])
    async def list_models(sessions: ChatSessions = Depends(get_sessions)) -> List[ModelDescriptor]:
        """Lists models that have a provider adapter"""
        return sessions.dispatcher.available_models()

    @app.get("/chats", response_model=List[Chat])
    async def list_chats(sessions: ChatSessions = Depends(get_sessions)) -> List[Chat]:
        """Lists the user's chats, pinned first"""
        directory = await sessions.chats()
        return await directory.refresh_chats()

    @app.post("/chats", response_model=Chat)
    async def create_chat(body: ChatCreate, sessions: ChatSessions = Depends(get_sessions)) -> Chat:
        """Starts a new chat"""
        directory = await sessions.chats()
        try:
            return await directory.create_chat(Chat(title=body.title, user_id=sessions.config.user_id))
        except Exception as e:
            raise http_error(e, "create_chat_error")

    @app.delete("/chats/{chat_id}", status_code=204)
    async def delete_chat(chat_id: UUID, sessions: ChatSessions = Depends(get_sessions)) -> Response:
        """Deletes a chat and all of its messages"""
        directory = await sessions.chats()
        try:
            await directory.delete_chat(chat_id)
        except Exception as e:
            raise http_error(e, "delete_chat_error", chat_id=str(chat_id))
        sessions.drop(chat_id)
        return Response(status_code=204)

    @app.post("/chats/{chat_id}/pin", response_model=Chat)
    async def toggle_pin(chat_id: UUID, sessions: ChatSessions = Depends(get_sessions)) -> Chat:
        """Pins or unpins a chat"""
        directory = await sessions.chats()
        try:
            return await directory.toggle_pin(chat_id)
        except Exception as e:
            raise http_error(e, "toggle_pin_error", chat_id=str(chat_id))

    @app.post("/chats/{chat_id}/summary", response_model=Chat)
    async def summarize_chat(chat_id: UUID, sessions: ChatSessions = Depends(get_sessions)) -> Chat:
        """Creates or refreshes the chat summary used in the system prompt"""
        try:
            session = await sessions.get(chat_id)
            # pick up pin and title changes made through the chat list
            await session.store.refresh_chats()
            chat = await session.summarizer.summarize_chat(chat_id)
        except Exception as e:
            raise http_error(e, "summarize_chat_error", chat_id=str(chat_id))
        await (await sessions.chats()).refresh_chats()
        return chat

    @app.get("/chats/{chat_id}/messages", response_model=List[Message])
    async def get_messages(
        chat_id: UUID,
        limit: int = 100,
        offset: int = 0,
        sessions: ChatSessions = Depends(get_sessions),
    ) -> List[Message]:
        """Gets paginated message history for a chat"""
        try:
            session = await sessions.get(chat_id)
        except Exception as e:
            raise http_error(e, "get_messages_error", chat_id=str(chat_id))
        return session.store.messages[offset : offset + limit]

    @app.post("/chats/{chat_id}/messages", response_model=Message)
    async def send_message(
        chat_id: UUID, body: MessageCreate, sessions: ChatSessions = Depends(get_sessions)
    ) -> Message:
        """Adds a user message and returns the generated reply (or its recorded error)"""
        try:
            session = await sessions.get(chat_id)
            reply = await session.engine.send_message(body.content, body.model_id)
        except Exception as e:
            raise http_error(e, "send_message_error", chat_id=str(chat_id))
        return _reply(reply)

    @app.post("/chats/{chat_id}/messages/{message_id}/retry", response_model=Message)
    async def retry_message(
        chat_id: UUID,
        message_id: UUID,
        body: Optional[RetryRequest] = None,
        sessions: ChatSessions = Depends(get_sessions),
    ) -> Message:
        """Regenerates the answer at a message"""
        try:
            session = await sessions.get(chat_id)
            reply = await session.engine.retry(message_id, body.model_id if body else None)
        except Exception as e:
            raise http_error(e, "retry_message_error", chat_id=str(chat_id), message_id=str(message_id))
        return _reply(reply)

    @app.put("/chats/{chat_id}/messages/{message_id}", response_model=Message)
    async def edit_message(
        chat_id: UUID,
        message_id: UUID,
        body: MessageCreate,
        sessions: ChatSessions = Depends(get_sessions),
    ) -> Message:
        """Edits a user message and regenerates from it"""
        try:
            session = await sessions.get(chat_id)
            reply = await session.engine.edit(message_id, body.content, body.model_id)
        except Exception as e:
            raise http_error(e, "edit_message_error", chat_id=str(chat_id), message_id=str(message_id))
        return _reply(reply)

    @app.post("/chats/{chat_id}/messages/{message_id}/branch", response_model=Chat)
    async def branch_chat(
        chat_id: UUID, message_id: UUID, sessions: ChatSessions = Depends(get_sessions)
    ) -> Chat:
        """Copies the chat up to a message into a new chat"""
        try:
            session = await sessions.get(chat_id)
            chat = await session.engine.branch(message_id, sessions.config.user_id)
        except Exception as e:
            raise http_error(e, "branch_chat_error", chat_id=str(chat_id), message_id=str(message_id))
        await (await sessions.chats()).refresh_chats()
        return chat

    @app.delete("/chats/{chat_id}/messages/{message_id}", status_code=204)
    async def delete_message(
        chat_id: UUID, message_id: UUID, sessions: ChatSessions = Depends(get_sessions)
    ) -> Response:
        """Deletes one message"""
        try:
            session = await sessions.get(chat_id)
            await session.store.delete(message_id)
        except Exception as e:
            raise http_error(e, "delete_message_error", chat_id=str(chat_id), message_id=str(message_id))
        return Response(status_code=204)

    @app.post("/chats/{chat_id}/share", response_model=SharedChat)
    async def share_chat(
        chat_id: UUID,
        body: Optional[ShareRequest] = None,
        sessions: ChatSessions = Depends(get_sessions),
    ) -> SharedChat:
        """Publishes a read-only snapshot of a chat"""
        try:
            session = await sessions.get(chat_id)
            return await session.engine.share_chat(body.expires_in_days if body else None)
        except Exception as e:
            raise http_error(e, "share_chat_error", chat_id=str(chat_id))

    @app.get("/shared/{shared_chat_id}", response_model=SharedChatView)
    async def get_shared_chat(
        shared_chat_id: UUID, sessions: ChatSessions = Depends(get_sessions)
    ) -> SharedChatView:
        """Reads a shared snapshot"""
        try:
            shared = await sessions.directory.get_shared_chat(shared_chat_id)
        except Exception as e:
            raise http_error(e, "get_shared_chat_error", shared_chat_id=str(shared_chat_id))
        if shared.is_expired():
            return SharedChatView(shared_chat=shared.model_copy(update={"messages_snapshot": []}), expired=True)
        return SharedChatView(shared_chat=shared)

    @app.post("/shared/{shared_chat_id}/copy", response_model=Chat)
    async def copy_shared_chat(
        shared_chat_id: UUID, sessions: ChatSessions = Depends(get_sessions)
    ) -> Chat:
        """Copies a shared snapshot into a new chat of the current user"""
        try:
            engine = await sessions.engine()
            return await engine.copy_shared_chat(shared_chat_id, sessions.config.user_id)
        except Exception as e:
            raise http_error(e, "copy_shared_chat_error", shared_chat_id=str(shared_chat_id))

    @app.post("/api/chat")
    async def chat_completion(body: ChatCompletionBody, sessions: ChatSessions = Depends(get_sessions)):
        """Stateless completion; Server-Sent Events when ``stream`` is set"""
        request = CompletionRequest(
            model_id=body.model,
            messages=body.messages,
            temperature=body.temperature,
            max_tokens=body.max_tokens,
            stream=body.stream,
        )
        credentials = _merged_credentials(sessions.credentials, body.api_keys)

        if not body.stream:
            try:
                result: CompletionResult = await sessions.dispatcher.complete(request, credentials)
            except Exception as e:
                raise http_error(e, "chat_completion_error", model=body.model)
            return result

        async def events() -> AsyncIterator[str]:
            try:
                async for chunk in sessions.dispatcher.stream_complete(request, credentials):
                    yield f"data: {chunk.model_dump_json()}\n\n"
                    if chunk.finished:
                        yield "data: [DONE]\n\n"
                        break
            except Exception as e:
                ERRORS.inc()
                logger.error("chat_stream_error", model=body.model, error=str(e))
                yield f"data: {json.dumps({'error': str(e)})}\n\n"

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


def main() -> None:
    """Run the API with uvicorn."""
    config = AppConfig.from_env()
    configure_logging(config.log_level)
    uvicorn.run(create_app(config), host="0.0.0.0", port=8000)
