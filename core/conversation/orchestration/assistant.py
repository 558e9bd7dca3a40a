"""
Assistant orchestration.

The Assistant owns the working set of threads, runs the middleware pipeline
around every ask and drives the handoff state machine. All read-modify-persist
cycles on a chat (ask, handoff, release, eviction) run under that chat's lock.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config import AssistantConfig
from core.conversation.context.storage import ThreadStorage
from core.conversation.context.thread import Thread
from core.conversation.errors import HumanModeViolation
from core.conversation.orchestration.handoff import HandoffStateMachine
from core.conversation.orchestration.locks import ChatLocks
from core.conversation.pipeline.middleware import Middleware, MiddlewareContext, MiddlewarePipeline
from core.services.generation_service import GenerationBackend
from models.schemas import AskOptions, HandoffState, MessageRole, ReleaseInfo

logger = logging.getLogger(__name__)

HANDOFF_CONTEXT_KEY = "handoff_state"
SUMMARY_CONTEXT_KEY = "human_interaction_summary"
RELEASE_CONTEXT_KEY = "release_metadata"
SYSTEM_CHAT_ID = "system"


@dataclass
class RegisteredFunction:
    """A function the generation backend may call"""
    name: str
    handler: Callable
    description: str = "No description provided"
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def definition(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


class Assistant:
    """Orchestrates threads, middleware and human handoff for all chats"""

    def __init__(self, config: Optional[AssistantConfig] = None,
                 storage: Optional[ThreadStorage] = None,
                 backend: Optional[GenerationBackend] = None):
        self.config = config or AssistantConfig()
        self.storage = storage or self.config.storage_registry.create(
            self.config.storage_provider,
            ttl=self.config.ttl,
            **self.config.storage_options
        )
        self.backend = backend or self.create_backend(self.config.provider)

        self.threads: Dict[str, Thread] = {}
        self.functions: Dict[str, RegisteredFunction] = {}
        self.pipeline = MiddlewarePipeline()
        self.handoff = HandoffStateMachine()
        self.locks = ChatLocks()

        self._stats = {
            "requests": 0,
            "errors": 0,
            "start_time": time.time(),
            "request_times": deque(maxlen=100),
        }

        logger.info(
            f"Assistant ready (provider={self.config.provider}, storage={self.config.storage_provider}, "
            f"max_threads={self.config.max_threads})"
        )

    def create_backend(self, provider: str) -> GenerationBackend:
        """Build a generation backend from the configured registry"""
        options = self.config.backend_options()
        if provider != self.config.provider:
            # The configured model belongs to the primary provider
            options["default_model"] = None
        return self.config.backend_registry.create(provider, **options)

    # Middleware

    def use(self, middleware: Middleware) -> 'Assistant':
        """Add middleware to the ask pipeline"""
        self.pipeline.add(middleware)
        return self

    # Functions

    def register_function(self, name: str, handler: Callable, description: Optional[str] = None,
                          parameters: Optional[Dict[str, Any]] = None) -> 'Assistant':
        function = RegisteredFunction(name=name, handler=handler)
        if description:
            function.description = description
        if parameters:
            function.parameters = parameters
        self.functions[name] = function
        return self

    def register_functions(self, functions: Dict[str, Callable]) -> 'Assistant':
        """
        Register several functions at once. Description and JSON-schema
        parameters are read from ``description`` / ``parameters`` attributes
        on the callable, falling back to its docstring.
        """
        for name, handler in functions.items():
            self.register_function(
                name,
                handler,
                description=getattr(handler, "description", None) or (handler.__doc__ or "").strip() or None,
                parameters=getattr(handler, "parameters", None),
            )
        return self

    def function_definitions(self) -> List[Dict[str, Any]]:
        return [function.definition() for function in self.functions.values()]

    # Threads

    async def get_thread(self, chat_id: str) -> Thread:
        """Get a thread from the working set, loading or creating it if needed"""
        thread = self.threads.get(chat_id)
        if thread is None:
            thread = await self.create_thread(chat_id)
        return thread

    async def create_thread(self, chat_id: str) -> Thread:
        """Load a thread from storage (or start a fresh one) into the working set"""
        if len(self.threads) >= self.config.max_threads:
            await self._cleanup_old_threads()

        snapshot = await self.storage.get(chat_id)
        thread = Thread(chat_id, self, snapshot)
        self.threads[chat_id] = thread
        logger.debug(f"Thread {chat_id} {'loaded' if snapshot else 'created'}", extra={"chat_id": chat_id})
        return thread

    async def save_thread(self, thread: Thread):
        await self.storage.save(thread.to_snapshot())

    async def delete_thread(self, chat_id: str) -> bool:
        """Drop a thread from the working set and from storage"""
        async with self.locks.hold(chat_id):
            self.threads.pop(chat_id, None)
            return await self.storage.delete(chat_id)

    async def _cleanup_old_threads(self):
        """Persist and drop least recently used threads until there is room for one more"""
        for thread in sorted(self.threads.values(), key=lambda t: t.last_used):
            if len(self.threads) < self.config.max_threads:
                break
            if self.locks.is_busy(thread.chat_id):
                continue
            async with self.locks.hold(thread.chat_id):
                await self.save_thread(thread)
                self.threads.pop(thread.chat_id, None)
            logger.info(f"Evicted thread {thread.chat_id} from working set", extra={"chat_id": thread.chat_id})

        if len(self.threads) >= self.config.max_threads:
            logger.warning(f"Working set above limit ({len(self.threads)} threads), all candidates busy")

    # Asking

    async def ask(self, chat_id: str, prompt: str, options: Optional[AskOptions] = None) -> Optional[str]:
        """
        Ask the assistant a question in a chat.

        Args:
            chat_id: Chat identifier
            prompt: User prompt
            options: Per-request options

        Returns:
            The response produced by the middleware or the thread

        Raises:
            HumanModeViolation: If the chat is owned by a human operator
        """
        options = options or AskOptions()
        context = MiddlewareContext(chat_id=chat_id, prompt=prompt, options=options)

        async with self.locks.hold(chat_id):
            if self.handoff.is_in_human_mode(chat_id) and not options.ignore_handoff_state:
                raise HumanModeViolation(chat_id)

            start_time = time.time()
            self._stats["requests"] += 1
            try:
                await self.pipeline.build(self._ask_thread)(context)
            except Exception as e:
                self._stats["errors"] += 1
                context.error = e
                logger.error(f"Ask failed for {chat_id}: {str(e)}", extra={"chat_id": chat_id})
                if options.fallback_response:
                    return options.fallback_response
                raise

        self._stats["request_times"].append((time.time() - start_time) * 1000)
        return context.response

    async def _ask_thread(self, context: MiddlewareContext):
        """Terminal pipeline handler"""
        if context.response is not None:
            return
        if context.thread is None:
            context.thread = await self.get_thread(context.chat_id)
        context.response = await context.thread.ask(context.prompt, context.options)

    # Handoff

    def register_human_handlers(self, on_handoff: Optional[Callable] = None,
                                on_message: Optional[Callable] = None,
                                on_release: Optional[Callable] = None):
        self.handoff.register_handlers(on_handoff=on_handoff, on_message=on_message, on_release=on_release)

    def is_in_human_mode(self, chat_id: str) -> bool:
        return self.handoff.is_in_human_mode(chat_id)

    def get_human_mode_chats(self) -> List[Dict[str, Any]]:
        return self.handoff.get_human_mode_chats()

    async def handoff_to_human(self, chat_id: str, reason: str = "",
                               metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Hand a chat over to a human operator. Calling it again for a chat
        already in human mode replaces the handoff and notifies again.
        """
        async with self.locks.hold(chat_id):
            thread = await self.get_thread(chat_id)
            state = self.handoff.enter_human_mode(chat_id, reason, metadata)
            thread.set_context(HANDOFF_CONTEXT_KEY, state.model_dump())
            await self.save_thread(thread)

        await self.handoff.notify_handoff(chat_id, thread, state)
        return True

    async def release_to_ai(self, chat_id: str, summary: str = "",
                            metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Give a chat back to the AI; returns False if it was not in human mode"""
        async with self.locks.hold(chat_id):
            if not self.handoff.is_in_human_mode(chat_id):
                return False

            thread = await self.get_thread(chat_id)
            self.handoff.exit_human_mode(chat_id)
            thread.remove_context(HANDOFF_CONTEXT_KEY)

            if summary:
                thread.set_context(SUMMARY_CONTEXT_KEY, summary)
                thread.add_message(MessageRole.SYSTEM, f"Human operator summary: {summary}")
            if metadata:
                thread.set_context(RELEASE_CONTEXT_KEY, metadata)

            await self.save_thread(thread)

        await self.handoff.notify_release(chat_id, thread, ReleaseInfo(summary=summary, metadata=metadata or {}))
        return True

    async def restore_handoff_state(self) -> int:
        """
        Rebuild the human-mode set from handoff state persisted in thread
        context, e.g. after a restart. Returns the number of chats restored.
        """
        restored = 0
        for snapshot in await self.storage.list_all():
            data = snapshot.context.get(HANDOFF_CONTEXT_KEY)
            if not data or not data.get("is_human_mode", True):
                continue
            state = HandoffState.model_validate({**data, "thread_id": snapshot.chat_id})
            self.handoff.enter_human_mode(snapshot.chat_id, state.reason, state.metadata, state.handoff_time)
            restored += 1

        logger.info(f"Restored human mode for {restored} chats")
        return restored

    # Statistics

    def get_stats(self) -> Dict[str, Any]:
        request_times = self._stats["request_times"]
        average_time = sum(request_times) / len(request_times) if request_times else 0
        uptime = time.time() - self._stats["start_time"]
        requests = self._stats["requests"]

        return {
            "requests": requests,
            "errors": self._stats["errors"],
            "error_rate": self._stats["errors"] / requests if requests else 0,
            "average_response_time": average_time,
            "requests_per_minute": requests / (uptime / 60) if uptime > 0 else 0,
            "uptime": uptime,
            "active_threads": len(self.threads),
            "human_mode_chats": len(self.handoff.get_human_mode_chats()),
        }

    # Language utilities

    async def analyze_sentiment(self, text: str) -> Dict[str, Any]:
        prompt = (f"Analyze the sentiment of this text and return a score between -1 (very negative) "
                  f"and 1 (very positive): \"{text}\"")
        response = await self.ask(SYSTEM_CHAT_ID, prompt) or ""
        try:
            score = float(response.strip())
        except ValueError:
            score = 0.0
        return {
            "score": score,
            "text": text,
            "is_positive": score > 0,
            "is_negative": score < 0,
            "is_neutral": score == 0,
        }

    async def get_smart_replies(self, text: str, max_suggestions: int = 3) -> List[str]:
        prompt = f"Generate {max_suggestions} natural, contextually appropriate responses to this message: \"{text}\""
        response = await self.ask(SYSTEM_CHAT_ID, prompt) or ""
        return [line.strip() for line in response.split("\n") if line.strip()]

    async def detect_language(self, text: str) -> str:
        prompt = f"What is the ISO language code of this text? Just return the 2-letter code: \"{text}\""
        return (await self.ask(SYSTEM_CHAT_ID, prompt) or "").strip().lower()

    async def translate(self, text: str, target_language: str) -> str:
        prompt = f"Translate this text to {target_language}: \"{text}\""
        return (await self.ask(SYSTEM_CHAT_ID, prompt) or "").strip()

    # Shutdown

    async def close(self):
        """Flush (persistent memory) or drop (session memory) the working set and close backends"""
        if self.config.memory_type == "persistent":
            for thread in list(self.threads.values()):
                await self.save_thread(thread)
            logger.info(f"Persisted {len(self.threads)} threads on shutdown")
        self.threads.clear()
        await self.storage.close()
        await self.backend.close()
