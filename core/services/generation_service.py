"""
Generation backends.

Every backend turns a system prompt plus message history into a
``GenerationResult``: the completion text and, optionally, a function call
the model wants executed. Backends are resolved by provider name through a
``BackendRegistry`` owned by the assistant configuration.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from openai import AsyncOpenAI, APIError, APIStatusError

from core.conversation.errors import GenerationBackendError, UnsupportedProviderError
from models.schemas import (
    AskOptions,
    FunctionCall,
    GenerationResult,
    MessageRole,
    ThreadMessage,
)

logger = logging.getLogger(__name__)


class GenerationBackend(ABC):
    """Abstract base class for generation backends"""

    name = "base"
    default_model = ""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 default_model: Optional[str] = None, temperature: float = 0.7,
                 max_tokens: int = 500, request_timeout: float = 60, **options):
        self.api_key = api_key
        self.base_url = base_url
        self.model = default_model or self.default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.options = options

    def _resolve(self, options: Optional[AskOptions]) -> Dict[str, Any]:
        """Per-request settings, falling back to the backend defaults"""
        options = options or AskOptions()
        return {
            "model": options.model or self.model,
            "temperature": options.temperature if options.temperature is not None else self.temperature,
            "max_tokens": options.max_tokens or self.max_tokens,
        }

    @staticmethod
    def _flatten_message(message: ThreadMessage) -> Optional[Dict[str, str]]:
        """Map history entries onto plain user/assistant turns"""
        if message.role == MessageRole.ASSISTANT:
            return {"role": "assistant", "content": message.content or ""}
        if message.role == MessageRole.USER:
            return {"role": "user", "content": message.content or ""}
        if message.role == MessageRole.FUNCTION:
            return {"role": "user", "content": f"Function result from {message.name}: {message.content}"}
        if message.role == MessageRole.SYSTEM:
            return {"role": "user", "content": f"System: {message.content}"}
        return None

    @abstractmethod
    async def generate(self, system_prompt: str, messages: List[ThreadMessage],
                       options: Optional[AskOptions] = None,
                       functions: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        """
        Generate a completion.

        Args:
            system_prompt: System prompt embedding the thread context
            messages: Conversation history to send
            options: Per-request overrides
            functions: Callable function definitions, if any

        Returns:
            Completion content and optional function call
        """

    async def close(self):
        """Release any client held by the backend"""


class OpenAIBackend(GenerationBackend):
    """Chat completions through the OpenAI SDK"""

    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, client: Optional[AsyncOpenAI] = None, **kwargs):
        super().__init__(**kwargs)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.request_timeout,
            )
        return self._client

    @staticmethod
    def _to_openai_message(message: ThreadMessage) -> Dict[str, Any]:
        if message.role == MessageRole.ASSISTANT and message.function_call:
            call = message.function_call
            return {
                "role": "assistant",
                "content": message.content,
                "tool_calls": [{
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }],
            }
        if message.role == MessageRole.FUNCTION:
            if message.tool_call_id:
                return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content or ""}
            return {"role": "user", "content": f"Function result from {message.name}: {message.content}"}
        return {"role": message.role.value, "content": message.content or ""}

    async def generate(self, system_prompt: str, messages: List[ThreadMessage],
                       options: Optional[AskOptions] = None,
                       functions: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        settings = self._resolve(options)
        request: Dict[str, Any] = {
            "model": settings["model"],
            "messages": [{"role": "system", "content": system_prompt}]
                        + [self._to_openai_message(m) for m in messages],
            "temperature": settings["temperature"],
            "max_tokens": settings["max_tokens"],
        }
        if functions:
            request["tools"] = [{"type": "function", "function": fn} for fn in functions]
            request["tool_choice"] = "auto"

        try:
            completion = await self.client.chat.completions.create(**request)
        except APIStatusError as e:
            raise GenerationBackendError(self.name, str(e), status=e.status_code) from e
        except APIError as e:
            raise GenerationBackendError(self.name, str(e)) from e

        if not completion.choices:
            raise GenerationBackendError(self.name, "Response contained no choices")

        message = completion.choices[0].message
        function_call = None
        if message.tool_calls:
            tool_call = message.tool_calls[0]
            function_call = FunctionCall(
                id=tool_call.id,
                name=tool_call.function.name,
                arguments=tool_call.function.arguments or "{}",
            )
        return GenerationResult(content=message.content, function_call=function_call)

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


class _RestBackend(GenerationBackend):
    """Shared aiohttp plumbing for REST backends"""

    async def _post_json(self, url: str, payload: Dict[str, Any],
                         headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                    headers={"Content-Type": "application/json", **(headers or {})}
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"{self.name} API error {response.status}: {error_text[:200]}")
                        raise GenerationBackendError(self.name, error_text, status=response.status)
                    return await response.json()
        except aiohttp.ClientError as e:
            raise GenerationBackendError(self.name, str(e)) from e


class AnthropicBackend(_RestBackend):
    """Anthropic Messages API over REST"""

    name = "anthropic"
    default_model = "claude-3-5-sonnet-latest"
    api_version = "2023-06-01"

    async def generate(self, system_prompt: str, messages: List[ThreadMessage],
                       options: Optional[AskOptions] = None,
                       functions: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        settings = self._resolve(options)
        payload = {
            "model": settings["model"],
            "system": system_prompt,
            "messages": [m for m in map(self._flatten_message, messages) if m],
            "max_tokens": settings["max_tokens"],
            "temperature": settings["temperature"],
        }
        base_url = self.base_url or "https://api.anthropic.com"
        data = await self._post_json(
            f"{base_url}/v1/messages",
            payload,
            headers={"x-api-key": self.api_key or "", "anthropic-version": self.api_version},
        )

        text_blocks = [block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"]
        if not text_blocks:
            raise GenerationBackendError(self.name, f"No text content in response: {data}")
        return GenerationResult(content="".join(text_blocks))


class GoogleBackend(_RestBackend):
    """Gemini generateContent over REST"""

    name = "google"
    default_model = "gemini-1.5-flash"

    async def generate(self, system_prompt: str, messages: List[ThreadMessage],
                       options: Optional[AskOptions] = None,
                       functions: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        settings = self._resolve(options)

        contents = [{"role": "user", "parts": [{"text": f"System: {system_prompt}"}]}]
        for message in messages:
            flattened = self._flatten_message(message)
            if flattened:
                role = "model" if flattened["role"] == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": flattened["content"]}]})

        payload = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": settings["max_tokens"],
                "temperature": settings["temperature"],
            },
        }
        base_url = self.base_url or "https://generativelanguage.googleapis.com/v1beta"
        data = await self._post_json(
            f"{base_url}/models/{settings['model']}:generateContent?key={self.api_key}",
            payload,
        )

        candidates = data.get("candidates") or []
        if candidates:
            parts = candidates[0].get("content", {}).get("parts") or []
            if parts and "text" in parts[0]:
                return GenerationResult(content=parts[0]["text"])
        raise GenerationBackendError(self.name, f"No valid content in response: {data}")


class LocalBackend(_RestBackend):
    """Local models served by Ollama"""

    name = "local"
    default_model = "llama3"

    async def generate(self, system_prompt: str, messages: List[ThreadMessage],
                       options: Optional[AskOptions] = None,
                       functions: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        settings = self._resolve(options)
        chat_messages = [{"role": "system", "content": system_prompt}]
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                chat_messages.append({"role": "system", "content": message.content or ""})
            else:
                flattened = self._flatten_message(message)
                if flattened:
                    chat_messages.append(flattened)

        payload = {
            "model": settings["model"],
            "messages": chat_messages,
            "stream": False,
            "options": {"temperature": settings["temperature"]},
        }
        base_url = self.base_url or "http://localhost:11434"
        data = await self._post_json(f"{base_url}/api/chat", payload)

        content = (data.get("message") or {}).get("content")
        if content is None:
            raise GenerationBackendError(self.name, f"No message in response: {json.dumps(data)[:200]}")
        return GenerationResult(content=content)


BackendFactory = Callable[..., GenerationBackend]


class BackendRegistry:
    """Resolves generation backends by provider name"""

    def __init__(self, include_builtins: bool = True):
        self._factories: Dict[str, BackendFactory] = {}
        if include_builtins:
            self.register("openai", OpenAIBackend)
            self.register("anthropic", AnthropicBackend)
            self.register("google", GoogleBackend)
            self.register("local", LocalBackend)

    def register(self, name: str, factory: BackendFactory) -> 'BackendRegistry':
        """Register a backend factory under a provider name"""
        self._factories[name] = factory
        return self

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str, **options) -> GenerationBackend:
        factory = self._factories.get(name)
        if factory is None:
            raise UnsupportedProviderError("AI", name)
        return factory(**options)
