"""Tests for threads and the generation loop."""

import json

import pytest

from config import AssistantConfig
from core.conversation.context.thread import SYSTEM_PROMPT_PREFIX
from core.conversation.errors import (
    FunctionNotFoundError,
    GenerationBackendError,
    TooManyFunctionCallsError,
)
from core.conversation.orchestration.assistant import Assistant
from models.schemas import (
    MAX_HISTORY,
    AskOptions,
    FunctionCall,
    GenerationResult,
    MessageRole,
)

from .conftest import FakeBackend


def function_call(name, arguments="{}", call_id="call_1"):
    return GenerationResult(function_call=FunctionCall(name=name, arguments=arguments, id=call_id))


@pytest.mark.asyncio
async def test_ask_records_turn_and_persists(assistant, backend, storage):
    backend.queue("Hello there")

    response = await assistant.ask("chat-1", "hi")

    assert response == "Hello there"
    snapshot = await storage.get("chat-1")
    assert [(m.role, m.content) for m in snapshot.history] == [
        (MessageRole.USER, "hi"),
        (MessageRole.ASSISTANT, "Hello there"),
    ]


@pytest.mark.asyncio
async def test_system_prompt_embeds_sorted_context(assistant, backend):
    thread = await assistant.get_thread("chat-1")
    thread.set_context("b", 1)
    thread.set_context("a", 2)

    await assistant.ask("chat-1", "hi")

    assert backend.calls[0]["system_prompt"] == SYSTEM_PROMPT_PREFIX + '{"a": 2, "b": 1}'


@pytest.mark.asyncio
async def test_context_helpers(assistant, storage):
    thread = await assistant.get_thread("chat-1")

    await thread.add_context("city", "Paris")
    assert (await storage.get("chat-1")).context == {"city": "Paris"}

    assert thread.get_context("city") == "Paris"
    assert thread.get_context("missing", "default") == "default"
    assert thread.remove_context("city")
    assert not thread.remove_context("city")


@pytest.mark.asyncio
async def test_function_call_loop(assistant, backend, storage):
    def get_weather(location):
        return {"location": location, "forecast": "sunny"}

    assistant.register_function(
        "get_weather",
        get_weather,
        description="Current weather for a city",
        parameters={"type": "object", "properties": {"location": {"type": "string"}}, "required": ["location"]},
    )
    backend.queue(function_call("get_weather", '{"location": "Paris"}'), "It is sunny in Paris")

    response = await assistant.ask("chat-1", "Weather in Paris?")

    assert response == "It is sunny in Paris"
    assert backend.calls[0]["functions"][0]["name"] == "get_weather"

    second_messages = backend.calls[1]["messages"]
    assert second_messages[-2].function_call.name == "get_weather"
    assert second_messages[-1].role == MessageRole.FUNCTION
    assert second_messages[-1].name == "get_weather"
    assert second_messages[-1].tool_call_id == "call_1"
    assert json.loads(second_messages[-1].content) == {"location": "Paris", "forecast": "sunny"}

    # Intermediate function turns are not recorded
    history = (await storage.get("chat-1")).history
    assert [m.role for m in history] == [MessageRole.USER, MessageRole.ASSISTANT]


@pytest.mark.asyncio
async def test_async_function_handlers_are_awaited(assistant, backend):
    async def lookup(order_id):
        return {"status": "shipped", "order_id": order_id}

    assistant.register_function("lookup", lookup)
    backend.queue(function_call("lookup", '{"order_id": 7}'), "Shipped")

    assert await assistant.ask("chat-1", "Where is order 7?") == "Shipped"
    assert json.loads(backend.calls[1]["messages"][-1].content) == {"status": "shipped", "order_id": 7}


@pytest.mark.asyncio
async def test_no_functions_sent_when_none_registered(assistant, backend):
    await assistant.ask("chat-1", "hi")

    assert backend.calls[0]["functions"] is None


@pytest.mark.asyncio
async def test_unknown_function_raises(assistant, backend):
    backend.queue(function_call("missing"))

    with pytest.raises(FunctionNotFoundError) as exc_info:
        await assistant.ask("chat-1", "hi")

    assert str(exc_info.value) == "Function missing not found"


@pytest.mark.asyncio
async def test_function_errors_are_returned_to_the_model(assistant, backend):
    def explode():
        raise ValueError("boom")

    assistant.register_function("explode", explode)
    backend.queue(function_call("explode"), "Sorry, something went wrong")

    response = await assistant.ask("chat-1", "do it")

    assert response == "Sorry, something went wrong"
    assert json.loads(backend.calls[1]["messages"][-1].content) == {"error": "boom"}


@pytest.mark.asyncio
async def test_bad_function_arguments_are_reported(assistant, backend):
    assistant.register_function("echo", lambda text: text)
    backend.queue(function_call("echo", "not json"), "done")

    await assistant.ask("chat-1", "hi")

    assert "error" in json.loads(backend.calls[1]["messages"][-1].content)


@pytest.mark.asyncio
async def test_function_call_chain_is_bounded(backend_registry, storage):
    config = AssistantConfig(provider="fake", max_function_calls=2, backend_registry=backend_registry)
    backend = FakeBackend(default=function_call("ping"))
    assistant = Assistant(config, storage=storage, backend=backend)
    assistant.register_function("ping", lambda: "pong")

    with pytest.raises(TooManyFunctionCallsError):
        await assistant.ask("chat-1", "loop forever")

    assert len(backend.calls) == 3


@pytest.mark.asyncio
async def test_fallback_response_on_backend_error(assistant, backend, storage):
    backend.queue(GenerationBackendError("openai", "rate limited", 429))

    response = await assistant.ask("chat-1", "hi", AskOptions(fallback_response="Please try again later"))

    assert response == "Please try again later"
    history = (await storage.get("chat-1")).history
    assert history[-1].content == "Please try again later"


@pytest.mark.asyncio
async def test_fallback_provider_on_backend_error(assistant, backend, backend_registry):
    backup = FakeBackend(script=["answer from backup"])
    backend_registry.register("backup", lambda **options: backup)
    backend.queue(GenerationBackendError("openai", "unavailable", 503))

    response = await assistant.ask("chat-1", "hi", AskOptions(fallback_provider="backup"))

    assert response == "answer from backup"
    assert backup.calls[0]["messages"][-1].content == "hi"
    assert backup.closed


@pytest.mark.asyncio
async def test_failed_fallback_provider_reraises_original_error(assistant, backend, backend_registry):
    backup = FakeBackend(script=[RuntimeError("backup down")])
    backend_registry.register("backup", lambda **options: backup)
    backend.queue(GenerationBackendError("openai", "unavailable", 503))

    with pytest.raises(GenerationBackendError):
        await assistant.ask("chat-1", "hi", AskOptions(fallback_provider="backup"))


@pytest.mark.asyncio
async def test_backend_error_propagates_without_fallback(assistant, backend):
    backend.queue(GenerationBackendError("openai", "unavailable", 503))

    with pytest.raises(GenerationBackendError) as exc_info:
        await assistant.ask("chat-1", "hi")

    assert str(exc_info.value) == "openai error 503: unavailable"


@pytest.mark.asyncio
async def test_history_is_bounded(assistant, storage):
    for i in range(15):
        await assistant.ask("chat-1", f"message {i}")

    thread = await assistant.get_thread("chat-1")
    assert len(thread.history) == MAX_HISTORY
    assert thread.history[-1].role == MessageRole.ASSISTANT
    assert thread.history[-2].content == "message 14"
    assert len((await storage.get("chat-1")).history) == MAX_HISTORY
