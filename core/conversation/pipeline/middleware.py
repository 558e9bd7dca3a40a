"""
Middleware components for the assistant pipeline.

Middleware wraps every assistant ask. Each step receives the mutable
``MiddlewareContext`` and the next handler in the chain; code before
``await next_handler(context)`` runs in registration order and code after it
unwinds in reverse. A step that returns without calling the next handler
short-circuits the chain, and a ``response`` it sets is returned as-is.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional

from models.schemas import AskOptions

if TYPE_CHECKING:
    from core.conversation.context.thread import Thread
    from core.conversation.orchestration.assistant import Assistant
    from core.services.sms_service import MessagingTransport

logger = logging.getLogger(__name__)


@dataclass
class MiddlewareContext:
    """Mutable state threaded through the pipeline for one ask"""
    chat_id: str
    prompt: str
    options: AskOptions = field(default_factory=AskOptions)
    response: Optional[str] = None
    thread: Optional['Thread'] = None
    error: Optional[Exception] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[MiddlewareContext], Awaitable[None]]


class Middleware(ABC):
    """Abstract base class for pipeline middleware"""

    @abstractmethod
    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        """
        Process the context and call the next handler in the chain.

        Args:
            context: State of the current ask
            next_handler: Next middleware or the thread ask
        """


class FunctionMiddleware(Middleware):
    """Adapts a plain ``async def step(context, next_handler)`` coroutine function"""

    def __init__(self, func: Callable[[MiddlewareContext, Handler], Awaitable[None]]):
        self.func = func

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        await self.func(context, next_handler)


class LoggingMiddleware(Middleware):
    """Logs each ask and its duration"""

    def __init__(self, log_level: int = logging.INFO):
        self.log_level = log_level

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        logger.log(
            self.log_level,
            "Processing ask",
            extra={"chat_id": context.chat_id, "prompt_preview": context.prompt[:50]}
        )

        start_time = time.time()
        await next_handler(context)
        processing_time = (time.time() - start_time) * 1000

        logger.log(
            self.log_level,
            "Ask processed",
            extra={
                "chat_id": context.chat_id,
                "processing_time_ms": processing_time,
                "response_length": len(context.response or "")
            }
        )


class ValidationMiddleware(Middleware):
    """Rejects empty or oversized prompts"""

    def __init__(self, max_length: int = 1000,
                 rejection: str = "I couldn't process your message. Please check your input and try again."):
        self.max_length = max_length
        self.rejection = rejection

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        errors = []
        if not context.prompt or not context.prompt.strip():
            errors.append("Prompt is required")
        if len(context.prompt or "") > self.max_length:
            errors.append(f"Prompt too long (max {self.max_length} characters)")

        if errors:
            logger.warning(f"Prompt validation failed for {context.chat_id}: {errors}")
            context.metadata["validation_errors"] = errors
            context.response = self.rejection
            return

        await next_handler(context)


class RateLimitingMiddleware(Middleware):
    """Sliding-window rate limit per chat"""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60,
                 rejection: str = "You're sending messages too quickly. Please wait a moment and try again."):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.rejection = rejection
        self.request_times: Dict[str, List[float]] = {}
        self._last_sweep = time.time()

    def _sweep(self, cutoff_time: float):
        """Forget chats with no requests inside the window"""
        idle = [chat_id for chat_id, times in self.request_times.items() if not times or times[-1] <= cutoff_time]
        for chat_id in idle:
            del self.request_times[chat_id]

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        now = time.time()
        cutoff_time = now - self.window_seconds
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(cutoff_time)
            self._last_sweep = now
        recent = [ts for ts in self.request_times.get(context.chat_id, []) if ts > cutoff_time]

        if len(recent) >= self.max_requests:
            logger.warning(f"Rate limit exceeded for {context.chat_id}")
            self.request_times[context.chat_id] = recent
            context.metadata["retry_after"] = self.window_seconds
            context.response = self.rejection
            return

        recent.append(now)
        self.request_times[context.chat_id] = recent
        await next_handler(context)


class ContentFilterMiddleware(Middleware):
    """Blocks prompts containing any of the configured terms"""

    def __init__(self, blocked_terms: Iterable[str],
                 rejection: str = "I'm sorry, but I can't process messages containing inappropriate language."):
        self.blocked_terms = [term.lower() for term in blocked_terms]
        self.rejection = rejection

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        prompt = context.prompt.lower()
        if any(term in prompt for term in self.blocked_terms):
            logger.info(f"Blocked prompt for {context.chat_id}")
            context.response = self.rejection
            return

        await next_handler(context)


class ContactEnrichmentMiddleware(Middleware):
    """Adds the sender's contact details and the current time to the thread context"""

    def __init__(self, assistant: 'Assistant', transport: 'MessagingTransport'):
        self.assistant = assistant
        self.transport = transport

    async def process(self, context: MiddlewareContext, next_handler: Handler) -> None:
        if context.thread is None:
            context.thread = await self.assistant.get_thread(context.chat_id)

        try:
            contact = await self.transport.get_contact(context.chat_id)
            context.thread.set_context("user", {
                "name": contact.display_name or "User",
                "number": contact.number,
            })
            context.thread.set_context("current_time", datetime.now(timezone.utc).isoformat())
        except Exception as e:
            logger.error(f"Error enriching context for {context.chat_id}: {str(e)}", exc_info=True)

        await next_handler(context)


class MiddlewarePipeline:
    """Manages a pipeline of middleware"""

    def __init__(self):
        self.middleware: List[Middleware] = []

    def add(self, middleware: Middleware) -> 'MiddlewarePipeline':
        """Add middleware to pipeline"""
        if not isinstance(middleware, Middleware):
            middleware = FunctionMiddleware(middleware)
        self.middleware.append(middleware)
        return self

    def build(self, final_handler: Handler) -> Handler:
        """Build the middleware chain"""
        def create_handler(middleware: Middleware, next_handler: Handler) -> Handler:
            async def handler(context: MiddlewareContext) -> None:
                await middleware.process(context, next_handler)
            return handler

        # Build chain in reverse order
        handler = final_handler
        for mw in reversed(self.middleware):
            handler = create_handler(mw, handler)

        return handler

    def clear(self):
        """Clear all middleware"""
        self.middleware.clear()

    def __len__(self) -> int:
        return len(self.middleware)
