"""Shared pytest fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from config import AssistantConfig
from core.chat.template_parser import TemplateParser
from core.conversation.context.storage import MemoryThreadStorage, StorageRegistry
from core.conversation.orchestration.assistant import Assistant
from core.conversation.orchestration.dispatcher import MessageDispatcher
from core.services.generation_service import BackendRegistry, GenerationBackend
from core.services.sms_service import MessagingTransport
from models.schemas import Contact, GenerationResult


class FakeBackend(GenerationBackend):
    """Scripted generation backend.

    Each queued item is returned (strings become plain completions) or raised
    (exceptions). Once the script is exhausted ``default`` is returned.
    """

    name = "fake"

    def __init__(self, script: Optional[List[Any]] = None, default: Any = "ok", delay: float = 0, **kwargs):
        super().__init__(**kwargs)
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def queue(self, *items):
        self.script.extend(items)

    async def generate(self, system_prompt, messages, options=None, functions=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "options": options,
            "functions": functions,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return GenerationResult(content=item)
        return item

    async def close(self):
        self.closed = True


class FakeTransport(MessagingTransport):
    def __init__(self, contact: Optional[Contact] = None, fail_lookup: bool = False):
        self.sent: List[tuple] = []
        self.contact = contact or Contact(display_name="Ada", number="+14045551234")
        self.fail_lookup = fail_lookup

    async def send_message(self, chat_id: str, text: str) -> bool:
        self.sent.append((chat_id, text))
        return True

    async def get_contact(self, chat_id: str) -> Contact:
        if self.fail_lookup:
            raise RuntimeError("contact lookup failed")
        return self.contact


ORDER_TEMPLATE = {
    "fields": {
        "item": {"type": "string", "required": True},
        "quantity": {"type": "number", "required": True},
        "address": {"type": "string", "required": False},
    },
    "examples": ["!order item:pizza quantity:2"],
}


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def storage() -> MemoryThreadStorage:
    return MemoryThreadStorage(ttl=3600)


@pytest.fixture
def backend_registry() -> BackendRegistry:
    return BackendRegistry().register("fake", FakeBackend)


@pytest.fixture
def config(backend_registry) -> AssistantConfig:
    return AssistantConfig(
        provider="fake",
        storage_provider="memory",
        backend_registry=backend_registry,
        storage_registry=StorageRegistry(),
    )


@pytest.fixture
def assistant(config, storage, backend) -> Assistant:
    return Assistant(config, storage=storage, backend=backend)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def parser() -> TemplateParser:
    return TemplateParser(default_templates={"order": ORDER_TEMPLATE})


@pytest.fixture
def dispatcher(assistant, parser, transport) -> MessageDispatcher:
    return MessageDispatcher(assistant, parser, transport)
