"""
Error taxonomy for the assistant orchestration layer.

Template validation failures are never raised; they are reported through
``ParsedMessage.errors``.
"""

from typing import Optional


class AssistantError(Exception):
    """Base class for assistant errors"""


class UnsupportedProviderError(AssistantError):
    """A storage or generation backend name is not registered"""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"Unsupported {kind} provider: {name}")


class FunctionNotFoundError(AssistantError):
    """The model requested a function that was never registered"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Function {name} not found")


class FunctionExecutionError(AssistantError):
    """A registered function raised while being executed"""

    def __init__(self, name: str, original: Exception):
        self.name = name
        self.original = original
        super().__init__(str(original))


class TooManyFunctionCallsError(AssistantError):
    """The function-call chain exceeded the configured bound"""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Function call chain exceeded {limit} calls")


class GenerationBackendError(AssistantError):
    """A generation backend call failed"""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        self.provider = provider
        self.status = status
        super().__init__(f"{provider} error{f' {status}' if status else ''}: {message}")


class HumanModeViolation(AssistantError):
    """An AI ask was attempted on a chat owned by a human operator"""

    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(
            "Cannot use AI to respond while in human mode. "
            "Use release_to_ai first or set the ignore_handoff_state option."
        )


class StorageError(AssistantError):
    """A thread storage operation failed"""
