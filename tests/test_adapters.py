"""Test suite for provider adapters, run against fake SDK clients."""

from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_exceptions

from orion_chat.domain.catalog import get_model_by_id
from orion_chat.domain.errors import AuthError, QuotaError, RateLimitError
from orion_chat.domain.models import CompletionRequest, PromptMessage, Role
from orion_chat.services.adapters.anthropic_adapter import AnthropicAdapter
from orion_chat.services.adapters.deepseek_adapter import DeepSeekAdapter
from orion_chat.services.adapters.google_adapter import GoogleAdapter
from orion_chat.services.adapters.openai_adapter import OpenAIAdapter


def request_for(model_id, *messages, **kwargs):
    return CompletionRequest(
        model_id=model_id,
        messages=[PromptMessage(role=role, content=content) for role, content in messages],
        **kwargs,
    )


async def collect(chunks):
    return [chunk async for chunk in chunks]


class FakeStream:
    def __init__(self, items, error=None):
        self.items = list(items)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.items:
            yield item
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class FakeOpenAICompletions:
    def __init__(self, response=None, chunks=(), error=None, stream_error=None):
        self.response = response
        self.chunks = chunks
        self.error = error
        self.stream_error = stream_error
        self.calls = []
        self.stream = None

    async def create(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        if params.get("stream"):
            self.stream = FakeStream(self.chunks, self.stream_error)
            return self.stream
        return self.response


def openai_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def openai_chunk(content=None, finish_reason=None):
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)],
        usage=None,
    )


@pytest.mark.asyncio
async def test_openai_stream_accumulates_and_terminates_once():
    completions = FakeOpenAICompletions(
        chunks=[
            openai_chunk("Hel"),
            openai_chunk("lo"),
            openai_chunk(None, "stop"),
            SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=5, completion_tokens=2)),
        ]
    )
    adapter = OpenAIAdapter(client_factory=lambda key: openai_client(completions))
    request = request_for("gpt-4o", (Role.SYSTEM, "be nice"), (Role.USER, "hi"))

    chunks = await collect(adapter.stream_complete(request, get_model_by_id("gpt-4o"), "sk-test"))

    assert [c.content_so_far for c in chunks] == ["Hel", "Hello", "Hello"]
    assert [c.delta for c in chunks] == ["Hel", "lo", None]
    assert [c.finished for c in chunks] == [False, False, True]
    final = chunks[-1]
    assert final.usage.input_tokens == 5
    assert final.usage.output_tokens == 2
    assert final.finish_reason == "stop"

    params = completions.calls[0]
    assert params["model"] == "gpt-4o"
    assert params["messages"] == [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "hi"},
    ]
    assert params["temperature"] == 0.7
    assert params["max_tokens"] == 4096
    assert params["stream"] is True
    assert params["stream_options"] == {"include_usage": True}
    assert completions.stream.closed


@pytest.mark.asyncio
async def test_openai_request_values_override_descriptor_defaults():
    completions = FakeOpenAICompletions(chunks=[openai_chunk("ok", "stop")])
    adapter = OpenAIAdapter(client_factory=lambda key: openai_client(completions))
    request = request_for("gpt-4o", (Role.USER, "hi"), temperature=0.1, max_tokens=50)

    await collect(adapter.stream_complete(request, get_model_by_id("gpt-4o"), "sk-test"))

    assert completions.calls[0]["temperature"] == 0.1
    assert completions.calls[0]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_reasoning_model_falls_back_to_single_chunk():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="42"), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=9, completion_tokens=1),
    )
    completions = FakeOpenAICompletions(response=response)
    adapter = OpenAIAdapter(client_factory=lambda key: openai_client(completions))
    descriptor = get_model_by_id("o3-mini")

    chunks = await collect(adapter.stream_complete(request_for("o3-mini", (Role.USER, "?")), descriptor, "sk"))

    assert len(chunks) == 1
    assert chunks[0].finished
    assert chunks[0].delta is None
    assert chunks[0].content_so_far == "42"
    assert chunks[0].metadata["model_type"] == "reasoning"
    params = completions.calls[0]
    assert "stream" not in params
    assert "temperature" not in params
    assert params["max_completion_tokens"] == descriptor.max_tokens


@pytest.mark.asyncio
async def test_openai_errors_are_classified():
    completions = FakeOpenAICompletions(error=RuntimeError("Error code: 429 - rate_limit_exceeded"))
    adapter = OpenAIAdapter(client_factory=lambda key: openai_client(completions))

    with pytest.raises(RateLimitError) as excinfo:
        await collect(adapter.stream_complete(request_for("gpt-4o", (Role.USER, "hi")), get_model_by_id("gpt-4o"), "sk"))
    assert excinfo.value.provider == "openai"


@pytest.mark.asyncio
async def test_openai_mid_stream_error_is_classified():
    completions = FakeOpenAICompletions(
        chunks=[openai_chunk("partial")],
        stream_error=RuntimeError("Incorrect API key provided"),
    )
    adapter = OpenAIAdapter(client_factory=lambda key: openai_client(completions))

    received = []
    with pytest.raises(AuthError):
        async for chunk in adapter.stream_complete(
            request_for("gpt-4o", (Role.USER, "hi")), get_model_by_id("gpt-4o"), "sk"
        ):
            received.append(chunk)
    assert [c.content_so_far for c in received] == ["partial"]


def test_deepseek_uses_its_own_endpoint():
    client = DeepSeekAdapter()._default_client("sk-deepseek")
    assert str(client.base_url).startswith("https://api.deepseek.com")
    assert DeepSeekAdapter.provider == "deepseek"


class FakeAnthropicStream:
    def __init__(self, texts, final):
        self.texts = texts
        self.final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        async def iterate():
            for text in self.texts:
                yield text

        return iterate()

    async def get_final_message(self):
        return self.final


class FakeAnthropicMessages:
    def __init__(self, texts=(), final=None, response=None):
        self.texts = texts
        self.final = final
        self.response = response
        self.calls = []

    def stream(self, **params):
        self.calls.append(params)
        return FakeAnthropicStream(self.texts, self.final)

    async def create(self, **params):
        self.calls.append(params)
        return self.response


@pytest.mark.asyncio
async def test_anthropic_takes_system_separately():
    final = SimpleNamespace(usage=SimpleNamespace(input_tokens=11, output_tokens=4), stop_reason="end_turn")
    messages = FakeAnthropicMessages(texts=["Bon", "jour"], final=final)
    adapter = AnthropicAdapter(client_factory=lambda key: SimpleNamespace(messages=messages))
    descriptor = get_model_by_id("claude-3-5-haiku-latest")
    request = request_for(
        descriptor.id,
        (Role.SYSTEM, "first rule"),
        (Role.SYSTEM, "second rule"),
        (Role.USER, "hello"),
        (Role.ASSISTANT, "hi"),
        (Role.USER, "in french"),
    )

    chunks = await collect(adapter.stream_complete(request, descriptor, "sk-ant"))

    assert chunks[-1].finished
    assert chunks[-1].content_so_far == "Bonjour"
    assert chunks[-1].usage.output_tokens == 4
    assert chunks[-1].finish_reason == "end_turn"
    params = messages.calls[0]
    assert params["system"] == "first rule\n\nsecond rule"
    assert [m["role"] for m in params["messages"]] == ["user", "assistant", "user"]
    assert params["max_tokens"] == descriptor.max_tokens


@pytest.mark.asyncio
async def test_anthropic_complete_without_system():
    response = SimpleNamespace(
        content=[SimpleNamespace(type="text", text="Sure.")],
        usage=SimpleNamespace(input_tokens=2, output_tokens=1),
        stop_reason="end_turn",
    )
    messages = FakeAnthropicMessages(response=response)
    adapter = AnthropicAdapter(client_factory=lambda key: SimpleNamespace(messages=messages))
    descriptor = get_model_by_id("claude-3-haiku-20240307")

    result = await adapter.complete(request_for(descriptor.id, (Role.USER, "ok?")), descriptor, "sk-ant")

    assert result.content == "Sure."
    assert result.metadata["provider"] == "anthropic"
    assert "system" not in messages.calls[0]


def gemini_chunk(text, finish_reason=None, usage=None):
    return SimpleNamespace(
        candidates=[
            SimpleNamespace(
                content=SimpleNamespace(parts=[SimpleNamespace(text=text)]),
                finish_reason=finish_reason,
            )
        ],
        usage_metadata=usage,
    )


class FakeGeminiModel:
    def __init__(self, chunks=(), error=None):
        self.chunks = chunks
        self.error = error
        self.calls = []

    async def generate_content_async(self, contents, generation_config=None, stream=False):
        self.calls.append({"contents": contents, "generation_config": generation_config, "stream": stream})
        if self.error is not None:
            raise self.error
        return FakeStream(self.chunks)


@pytest.mark.asyncio
async def test_google_renames_roles_and_uses_system_instruction():
    model = FakeGeminiModel(
        chunks=[
            gemini_chunk("Ci"),
            gemini_chunk(
                "ao",
                finish_reason=SimpleNamespace(name="STOP"),
                usage=SimpleNamespace(prompt_token_count=7, candidates_token_count=2),
            ),
        ]
    )
    created = []

    def factory(credential, model_name, system_instruction):
        created.append((credential, model_name, system_instruction))
        return model

    adapter = GoogleAdapter(model_factory=factory)
    descriptor = get_model_by_id("gemini-2.0-flash")
    request = request_for(
        descriptor.id,
        (Role.SYSTEM, "be brief"),
        (Role.USER, "hello"),
        (Role.ASSISTANT, "hi"),
        (Role.USER, "in italian"),
    )

    chunks = await collect(adapter.stream_complete(request, descriptor, "g-key"))

    assert created == [("g-key", "gemini-2.0-flash", "be brief")]
    call = model.calls[0]
    assert [c["role"] for c in call["contents"]] == ["user", "model", "user"]
    assert call["contents"][1]["parts"] == ["hi"]
    assert call["stream"] is True
    assert call["generation_config"]["max_output_tokens"] == 8192
    assert chunks[-1].content_so_far == "Ciao"
    assert chunks[-1].finish_reason == "STOP"
    assert chunks[-1].usage.input_tokens == 7


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (google_exceptions.ResourceExhausted("Quota exceeded for metric"), QuotaError),
        (google_exceptions.ResourceExhausted("Too many requests"), RateLimitError),
        (google_exceptions.PermissionDenied("denied"), AuthError),
    ],
)
async def test_google_exceptions_are_classified(error, expected):
    adapter = GoogleAdapter(model_factory=lambda *args: FakeGeminiModel(error=error))
    descriptor = get_model_by_id("gemini-1.5-flash")

    with pytest.raises(expected):
        await collect(adapter.stream_complete(request_for(descriptor.id, (Role.USER, "hi")), descriptor, "g-key"))


@pytest.mark.asyncio
async def test_google_blocked_candidate_yields_no_text():
    blocked = SimpleNamespace(candidates=[], usage_metadata=None)
    adapter = GoogleAdapter(model_factory=lambda *args: FakeGeminiModel(chunks=[blocked]))
    descriptor = get_model_by_id("gemini-1.5-flash")

    chunks = await collect(adapter.stream_complete(request_for(descriptor.id, (Role.USER, "hi")), descriptor, "k"))

    assert len(chunks) == 1
    assert chunks[0].finished
    assert chunks[0].content_so_far == ""
