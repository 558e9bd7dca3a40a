"""
Conversation thread for a single chat.

A thread owns the chat's context and bounded history and runs the generation
loop, resolving function calls requested by the backend until a plain
completion comes back.
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.conversation.errors import (
    FunctionExecutionError,
    FunctionNotFoundError,
    TooManyFunctionCallsError,
)
from models.schemas import (
    MAX_HISTORY,
    AskOptions,
    FunctionCall,
    MessageRole,
    ThreadMessage,
    ThreadSnapshot,
)

if TYPE_CHECKING:
    from core.conversation.orchestration.assistant import Assistant

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_PREFIX = "You are a helpful chat assistant. Current context: "


class Thread:
    """Context and history of one chat"""

    def __init__(self, chat_id: str, assistant: 'Assistant', snapshot: Optional[ThreadSnapshot] = None):
        self.chat_id = chat_id
        self.assistant = assistant
        self._context: Dict[str, Any] = dict(snapshot.context) if snapshot else {}
        self._history: List[ThreadMessage] = list(snapshot.history) if snapshot else []
        self.last_used: float = snapshot.last_used if snapshot else time.time()

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    @property
    def history(self) -> List[ThreadMessage]:
        return list(self._history)

    def get_context(self, key: str, default: Any = None) -> Any:
        return self._context.get(key, default)

    def set_context(self, key: str, value: Any):
        self._context[key] = value

    def remove_context(self, key: str) -> bool:
        return self._context.pop(key, None) is not None

    async def add_context(self, key: str, value: Any):
        """Set a context value and persist the thread"""
        self.set_context(key, value)
        await self.save()

    def add_message(self, role: MessageRole, content: Optional[str], name: Optional[str] = None):
        self._history.append(ThreadMessage(role=role, content=content, name=name))
        if len(self._history) > MAX_HISTORY:
            self._history = self._history[-MAX_HISTORY:]

    def to_snapshot(self) -> ThreadSnapshot:
        return ThreadSnapshot(
            chat_id=self.chat_id,
            context=dict(self._context),
            history=list(self._history),
            last_used=self.last_used,
        )

    def build_system_prompt(self) -> str:
        return SYSTEM_PROMPT_PREFIX + json.dumps(self._context, sort_keys=True, default=str)

    async def save(self):
        await self.assistant.save_thread(self)

    async def ask(self, prompt: str, options: Optional[AskOptions] = None) -> str:
        """
        Ask the generation backend a question in this thread.

        Args:
            prompt: User prompt
            options: Per-request options, including fallbacks

        Returns:
            Completion text
        """
        options = options or AskOptions()
        self.last_used = time.time()
        self.add_message(MessageRole.USER, prompt)

        system_prompt = self.build_system_prompt()
        response = await self._call_backend(system_prompt, list(self._history), options)

        self.add_message(MessageRole.ASSISTANT, response)
        await self.save()
        return response

    async def _call_backend(self, system_prompt: str, messages: List[ThreadMessage],
                            options: AskOptions) -> Optional[str]:
        try:
            return await self._generation_loop(system_prompt, messages, options)
        except Exception as e:
            logger.error(f"Error calling generation backend for {self.chat_id}: {str(e)}",
                         extra={"chat_id": self.chat_id})

            if options.fallback_response:
                return options.fallback_response

            if options.fallback_provider:
                try:
                    backend = self.assistant.create_backend(options.fallback_provider)
                    try:
                        result = await backend.generate(system_prompt, messages, options)
                    finally:
                        await backend.close()
                    return result.content
                except Exception as fallback_error:
                    logger.error(
                        f"Fallback provider {options.fallback_provider} failed: {str(fallback_error)}",
                        extra={"chat_id": self.chat_id}
                    )
            raise

    async def _generation_loop(self, system_prompt: str, messages: List[ThreadMessage],
                               options: AskOptions) -> Optional[str]:
        functions = self.assistant.function_definitions() or None
        limit = self.assistant.config.max_function_calls
        calls = 0

        while True:
            result = await self.assistant.backend.generate(system_prompt, messages, options, functions)
            if result.function_call is None:
                return result.content

            calls += 1
            if calls > limit:
                raise TooManyFunctionCallsError(limit)

            call = result.function_call
            output = await self._handle_function_call(call)
            # Intermediate turns only live in the working message list
            messages = messages + [
                ThreadMessage(role=MessageRole.ASSISTANT, content=result.content, function_call=call),
                ThreadMessage(
                    role=MessageRole.FUNCTION,
                    name=call.name,
                    content=json.dumps(output, default=str),
                    tool_call_id=call.id,
                ),
            ]

    async def _handle_function_call(self, call: FunctionCall) -> Any:
        function = self.assistant.functions.get(call.name)
        if function is None:
            raise FunctionNotFoundError(call.name)

        try:
            arguments = json.loads(call.arguments or "{}")
            if not isinstance(arguments, dict):
                raise ValueError(f"Arguments for {call.name} must be a JSON object")
            output = function.handler(**arguments)
            if asyncio.iscoroutine(output):
                output = await output
            return output
        except Exception as e:
            error = FunctionExecutionError(call.name, e)
            logger.error(f"Error executing function {call.name}: {str(error)}", extra={"chat_id": self.chat_id})
            return {"error": str(error)}
