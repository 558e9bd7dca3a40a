"""Tests for the Assistant: working set, locking, stats and lifecycle."""

import asyncio

import pytest

from config import AssistantConfig
from core.conversation.context.storage import MemoryThreadStorage
from core.conversation.errors import GenerationBackendError, HumanModeViolation, UnsupportedProviderError
from core.conversation.orchestration.assistant import Assistant, SYSTEM_CHAT_ID
from models.schemas import AskOptions, MessageRole

from .conftest import FakeBackend


class TrackingBackend(FakeBackend):
    """Records how many generations run at once, per chat and overall"""

    def __init__(self, **kwargs):
        super().__init__(delay=0.02, **kwargs)
        self.active = {}
        self.max_active_per_chat = 0
        self.total_active = 0
        self.max_total_active = 0

    async def generate(self, system_prompt, messages, options=None, functions=None):
        chat = messages[0].content.split(":")[0]
        self.active[chat] = self.active.get(chat, 0) + 1
        self.total_active += 1
        self.max_active_per_chat = max(self.max_active_per_chat, self.active[chat])
        self.max_total_active = max(self.max_total_active, self.total_active)
        try:
            return await super().generate(system_prompt, messages, options, functions)
        finally:
            self.active[chat] -= 1
            self.total_active -= 1


class HangingBackend(FakeBackend):
    async def generate(self, system_prompt, messages, options=None, functions=None):
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_eviction_persists_and_reloads_threads(backend_registry, storage, backend):
    config = AssistantConfig(provider="fake", max_threads=1, backend_registry=backend_registry)
    assistant = Assistant(config, storage=storage, backend=backend)

    await assistant.ask("chat-a", "hello from a")
    await assistant.ask("chat-b", "hello from b")

    assert list(assistant.threads) == ["chat-b"]
    assert (await storage.get("chat-a")).history[0].content == "hello from a"

    await assistant.ask("chat-a", "back again")

    assert list(assistant.threads) == ["chat-a"]
    reloaded = [m.content for m in backend.calls[-1]["messages"]]
    assert reloaded == ["hello from a", "ok", "back again"]


@pytest.mark.asyncio
async def test_eviction_skips_busy_chats(assistant):
    assistant.config.max_threads = 1
    await assistant.get_thread("chat-a")

    async with assistant.locks.hold("chat-a"):
        await assistant.get_thread("chat-b")

    assert set(assistant.threads) == {"chat-a", "chat-b"}


@pytest.mark.asyncio
async def test_asks_on_one_chat_are_serialized(assistant, storage):
    backend = TrackingBackend()
    assistant.backend = backend

    await asyncio.gather(
        assistant.ask("a", "a: first"),
        assistant.ask("a", "a: second"),
        assistant.ask("b", "b: first"),
    )

    assert backend.max_active_per_chat == 1
    assert backend.max_total_active == 2
    # Neither turn on chat "a" was lost
    history = (await storage.get("a")).history
    assert len(history) == 4
    assert {m.content for m in history if m.role == MessageRole.USER} == {"a: first", "a: second"}
    assert len(assistant.locks) == 0


@pytest.mark.asyncio
async def test_cancelled_ask_releases_the_chat(assistant):
    assistant.backend = HangingBackend()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(assistant.ask("chat-1", "hello?"), timeout=0.05)

    assert not assistant.locks.is_busy("chat-1")
    assistant.backend = FakeBackend(script=["I'm back"])
    assert await assistant.ask("chat-1", "hello again") == "I'm back"


@pytest.mark.asyncio
async def test_ask_refused_in_human_mode(assistant, backend):
    await assistant.handoff_to_human("chat-1", "billing")

    with pytest.raises(HumanModeViolation):
        await assistant.ask("chat-1", "hi")
    assert backend.calls == []

    response = await assistant.ask("chat-1", "hi", AskOptions(ignore_handoff_state=True))
    assert response == "ok"


@pytest.mark.asyncio
async def test_stats(assistant, backend):
    backend.queue("one", GenerationBackendError("openai", "down"), "two")

    await assistant.ask("chat-1", "first")
    with pytest.raises(GenerationBackendError):
        await assistant.ask("chat-1", "second")
    await assistant.ask("chat-2", "third")
    await assistant.handoff_to_human("chat-2")

    stats = assistant.get_stats()
    assert stats["requests"] == 3
    assert stats["errors"] == 1
    assert stats["error_rate"] == pytest.approx(1 / 3)
    assert stats["active_threads"] == 2
    assert stats["human_mode_chats"] == 1
    assert stats["average_response_time"] >= 0
    assert stats["uptime"] >= 0


@pytest.mark.asyncio
async def test_ask_level_fallback_response(assistant, backend):
    async def failing_middleware(context, next_handler):
        raise RuntimeError("middleware failure")

    assistant.use(failing_middleware)

    response = await assistant.ask("chat-1", "hi", AskOptions(fallback_response="fallback"))

    assert response == "fallback"
    assert assistant.get_stats()["errors"] == 1


@pytest.mark.asyncio
async def test_delete_thread(assistant, storage):
    await assistant.ask("chat-1", "hi")

    assert await assistant.delete_thread("chat-1")
    assert "chat-1" not in assistant.threads
    assert await storage.get("chat-1") is None
    assert not await assistant.delete_thread("chat-1")


@pytest.mark.asyncio
async def test_close_flushes_persistent_memory(backend_registry, backend):
    storage = MemoryThreadStorage()
    config = AssistantConfig(provider="fake", memory_type="persistent", backend_registry=backend_registry)
    assistant = Assistant(config, storage=storage, backend=backend)

    thread = await assistant.get_thread("chat-1")
    thread.set_context("plan", "premium")
    await assistant.close()

    assert (await storage.get("chat-1")).context == {"plan": "premium"}
    assert assistant.threads == {}
    assert backend.closed


@pytest.mark.asyncio
async def test_close_drops_session_memory(assistant, storage):
    thread = await assistant.get_thread("chat-1")
    thread.set_context("plan", "premium")
    await assistant.close()

    assert await storage.get("chat-1") is None
    assert assistant.threads == {}


@pytest.mark.asyncio
async def test_restore_handoff_state(config, storage, backend):
    first = Assistant(config, storage=storage, backend=backend)
    await first.handoff_to_human("chat-1", "billing issue", {"priority": "high"})
    await first.ask("chat-2", "hi")

    second = Assistant(config, storage=storage, backend=backend)
    assert not second.is_in_human_mode("chat-1")

    assert await second.restore_handoff_state() == 1
    state = second.handoff.get_state("chat-1")
    assert state.reason == "billing issue"
    assert state.metadata == {"priority": "high"}
    assert state.handoff_time == first.handoff.get_state("chat-1").handoff_time
    assert not second.is_in_human_mode("chat-2")


def test_register_functions_reads_docstrings(assistant):
    def get_time():
        """Current server time"""

    def lookup(order_id):
        pass

    lookup.description = "Look up an order"
    lookup.parameters = {"type": "object", "properties": {"order_id": {"type": "integer"}}, "required": ["order_id"]}

    assistant.register_functions({"get_time": get_time, "lookup": lookup, "noop": lambda: None})

    definitions = {d["name"]: d for d in assistant.function_definitions()}
    assert definitions["get_time"]["description"] == "Current server time"
    assert definitions["get_time"]["parameters"] == {"type": "object", "properties": {}, "required": []}
    assert definitions["lookup"]["description"] == "Look up an order"
    assert definitions["lookup"]["parameters"]["required"] == ["order_id"]
    assert definitions["noop"]["description"] == "No description provided"


@pytest.mark.asyncio
async def test_language_utilities(assistant, backend):
    backend.queue("0.8", "Thanks!\nGreat, see you\n\nSounds good", " EN\n", " Bonjour ")

    sentiment = await assistant.analyze_sentiment("I love it")
    assert sentiment["score"] == 0.8
    assert sentiment["is_positive"]

    assert await assistant.get_smart_replies("See you tomorrow") == ["Thanks!", "Great, see you", "Sounds good"]
    assert await assistant.detect_language("Hello") == "en"
    assert await assistant.translate("Hello", "French") == "Bonjour"
    assert SYSTEM_CHAT_ID in assistant.threads


@pytest.mark.asyncio
async def test_unparseable_sentiment_is_neutral(assistant, backend):
    backend.queue("quite positive")

    sentiment = await assistant.analyze_sentiment("fine")

    assert sentiment["score"] == 0.0
    assert sentiment["is_neutral"]


def test_unknown_generation_provider(storage):
    with pytest.raises(UnsupportedProviderError) as exc_info:
        Assistant(AssistantConfig(provider="nope"), storage=storage)

    assert str(exc_info.value) == "Unsupported AI provider: nope"


def test_unknown_storage_provider(backend):
    with pytest.raises(UnsupportedProviderError):
        Assistant(AssistantConfig(storage_provider="nope"), backend=backend)


def test_config_validation():
    with pytest.raises(ValueError):
        AssistantConfig(memory_type="forever")
    with pytest.raises(ValueError):
        AssistantConfig(max_threads=0)


def test_builds_storage_from_config(backend):
    assistant = Assistant(AssistantConfig(storage_provider="memory", ttl=42), backend=backend)

    assert isinstance(assistant.storage, MemoryThreadStorage)
    assert assistant.storage.ttl == 42
