"""Tests for the middleware pipeline and the built-in middleware."""

import logging

import pytest

from core.conversation.pipeline.middleware import (
    ContactEnrichmentMiddleware,
    ContentFilterMiddleware,
    LoggingMiddleware,
    Middleware,
    MiddlewareContext,
    MiddlewarePipeline,
    RateLimitingMiddleware,
    ValidationMiddleware,
)

from .conftest import FakeTransport


def recording(name, calls):
    async def step(context, next_handler):
        calls.append(f"{name}-before")
        await next_handler(context)
        calls.append(f"{name}-after")
    return step


@pytest.mark.asyncio
async def test_pipeline_runs_in_order_and_unwinds_in_reverse():
    calls = []
    pipeline = MiddlewarePipeline().add(recording("a", calls)).add(recording("b", calls))

    async def final_handler(context):
        calls.append("final")
        context.response = "done"

    context = MiddlewareContext(chat_id="chat-1", prompt="hi")
    await pipeline.build(final_handler)(context)

    assert calls == ["a-before", "b-before", "final", "b-after", "a-after"]
    assert context.response == "done"
    assert len(pipeline) == 2

    pipeline.clear()
    assert len(pipeline) == 0


@pytest.mark.asyncio
async def test_class_based_middleware():
    class Upper(Middleware):
        async def process(self, context, next_handler):
            await next_handler(context)
            context.response = context.response.upper()

    async def final_handler(context):
        context.response = "quiet"

    context = MiddlewareContext(chat_id="chat-1", prompt="hi")
    await MiddlewarePipeline().add(Upper()).build(final_handler)(context)

    assert context.response == "QUIET"


@pytest.mark.asyncio
async def test_assistant_middleware_order(assistant, backend):
    calls = []
    assistant.use(recording("a", calls)).use(recording("b", calls))

    response = await assistant.ask("chat-1", "hi")

    assert response == "ok"
    assert calls == ["a-before", "b-before", "b-after", "a-after"]
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_short_circuit_skips_later_middleware_and_backend(assistant, backend):
    calls = []

    async def blocker(context, next_handler):
        context.response = "blocked"

    assistant.use(blocker).use(recording("later", calls))

    assert await assistant.ask("chat-1", "hi") == "blocked"
    assert calls == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_preset_response_skips_the_backend(assistant, backend):
    calls = []

    async def canned(context, next_handler):
        context.response = "canned"
        await next_handler(context)

    assistant.use(canned).use(recording("later", calls))

    assert await assistant.ask("chat-1", "hi") == "canned"
    assert calls == ["later-before", "later-after"]
    assert backend.calls == []


@pytest.mark.asyncio
async def test_middleware_can_rewrite_response(assistant):
    async def signature(context, next_handler):
        await next_handler(context)
        context.response = f"{context.response} -- Support Team"

    assistant.use(signature)

    assert await assistant.ask("chat-1", "hi") == "ok -- Support Team"


@pytest.mark.asyncio
async def test_middleware_errors_propagate(assistant):
    async def broken(context, next_handler):
        raise RuntimeError("middleware failure")

    assistant.use(broken)

    with pytest.raises(RuntimeError):
        await assistant.ask("chat-1", "hi")
    assert assistant.get_stats()["errors"] == 1


@pytest.mark.asyncio
async def test_content_filter(assistant, backend):
    assistant.use(ContentFilterMiddleware(["darn"]))

    response = await assistant.ask("chat-1", "Well DARN it")

    assert response == "I'm sorry, but I can't process messages containing inappropriate language."
    assert backend.calls == []
    assert await assistant.ask("chat-1", "hello") == "ok"


@pytest.mark.asyncio
async def test_rate_limiting(assistant, backend):
    limiter = RateLimitingMiddleware(max_requests=2, window_seconds=60)
    assistant.use(limiter)

    assert await assistant.ask("chat-1", "one") == "ok"
    assert await assistant.ask("chat-1", "two") == "ok"
    assert await assistant.ask("chat-1", "three") == limiter.rejection
    assert await assistant.ask("chat-2", "one") == "ok"
    assert len(backend.calls) == 3


@pytest.mark.asyncio
async def test_rate_limiting_forgets_idle_chats():
    limiter = RateLimitingMiddleware(max_requests=2, window_seconds=60)
    limiter.request_times["idle-chat"] = [1.0]
    limiter._last_sweep = 0

    async def final_handler(context):
        context.response = "ok"

    handler = MiddlewarePipeline().add(limiter).build(final_handler)
    await handler(MiddlewareContext(chat_id="chat-1", prompt="hi"))

    assert list(limiter.request_times) == ["chat-1"]


@pytest.mark.asyncio
async def test_validation_rejects_empty_and_long_prompts():
    middleware = ValidationMiddleware(max_length=10)

    async def final_handler(context):
        context.response = "ok"

    handler = MiddlewarePipeline().add(middleware).build(final_handler)

    empty = MiddlewareContext(chat_id="chat-1", prompt="   ")
    await handler(empty)
    assert empty.response == middleware.rejection
    assert empty.metadata["validation_errors"] == ["Prompt is required"]

    long = MiddlewareContext(chat_id="chat-1", prompt="x" * 11)
    await handler(long)
    assert long.metadata["validation_errors"] == ["Prompt too long (max 10 characters)"]

    valid = MiddlewareContext(chat_id="chat-1", prompt="hello")
    await handler(valid)
    assert valid.response == "ok"


@pytest.mark.asyncio
async def test_contact_enrichment_adds_user_context(assistant, backend, transport):
    assistant.use(ContactEnrichmentMiddleware(assistant, transport))

    await assistant.ask("+14045551234", "hi")

    thread = await assistant.get_thread("+14045551234")
    assert thread.get_context("user") == {"name": "Ada", "number": "+14045551234"}
    assert thread.get_context("current_time")
    assert '"name": "Ada"' in backend.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_contact_enrichment_failure_does_not_block(assistant):
    assistant.use(ContactEnrichmentMiddleware(assistant, FakeTransport(fail_lookup=True)))

    assert await assistant.ask("chat-1", "hi") == "ok"
    assert (await assistant.get_thread("chat-1")).get_context("user") is None


@pytest.mark.asyncio
async def test_logging_middleware(assistant, caplog):
    assistant.use(LoggingMiddleware())

    with caplog.at_level(logging.INFO, logger="core.conversation.pipeline.middleware"):
        await assistant.ask("chat-1", "hi")

    messages = [record.getMessage() for record in caplog.records]
    assert "Processing ask" in messages
    assert "Ask processed" in messages
