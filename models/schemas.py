"""Data models for the chat assistant"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from enum import Enum
import time


MAX_HISTORY = 20


class MessageRole(str, Enum):
    """Roles a thread history entry can carry"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    FUNCTION = "function"


class AssistantMode(str, Enum):
    """Reply ownership of a chat"""
    AI_MODE = "ai_mode"
    HUMAN_MODE = "human_mode"


class FunctionCall(BaseModel):
    """Function invocation requested by a generation backend"""
    name: str
    arguments: str = "{}"
    id: Optional[str] = None


class ThreadMessage(BaseModel):
    """A single entry of a thread's history"""
    role: MessageRole
    content: Optional[str] = None
    name: Optional[str] = None  # function name for function results
    function_call: Optional[FunctionCall] = None
    tool_call_id: Optional[str] = None


class ThreadSnapshot(BaseModel):
    """Persisted form of a conversation thread"""
    chat_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[ThreadMessage] = Field(default_factory=list)
    last_used: float = Field(default_factory=time.time)


class HandoffState(BaseModel):
    """Present for every chat currently owned by a human operator"""
    is_human_mode: bool = True
    handoff_time: float = Field(default_factory=time.time)
    reason: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    thread_id: str


class ReleaseInfo(BaseModel):
    """Passed to the release handler when a chat goes back to the AI"""
    summary: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HumanHandlerResult(BaseModel):
    """Result of the human-mode message handler"""
    handled: bool = False
    response: Optional[str] = None


class FieldSpec(BaseModel):
    """Declared type and constraints of one template field"""
    type: Literal["string", "number", "boolean", "array"] = "string"
    required: bool = False
    pattern: Optional[str] = None


class MessageTemplate(BaseModel):
    """Declarative schema for a structured command"""
    fields: Dict[str, FieldSpec] = Field(default_factory=dict)
    examples: List[str] = Field(default_factory=list)


class ParsedMessage(BaseModel):
    """Outcome of parsing a message against a template"""
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def command(self) -> Optional[str]:
        return self.data.get("command")

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


class AskOptions(BaseModel):
    """Per-request options for an AI ask"""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    fallback_response: Optional[str] = None
    fallback_provider: Optional[str] = None
    ignore_handoff_state: bool = False


class ProcessOptions(BaseModel):
    """Options for dispatching one inbound message"""
    fallback_to_ai: bool = True
    handoff_on_error: bool = False
    templates: Optional[List[str]] = None
    ai_options: AskOptions = Field(default_factory=AskOptions)


class ProcessResult(BaseModel):
    """Single decision taken for an inbound message"""
    type: Literal["human", "handoff", "ai", "template", "unmatched"]
    response: Optional[str] = None
    handled: bool = False
    handoff_state: Optional[HandoffState] = None
    template: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class GenerationResult(BaseModel):
    """Completion returned by a generation backend"""
    content: Optional[str] = None
    function_call: Optional[FunctionCall] = None


class Contact(BaseModel):
    """Contact details exposed by the messaging transport"""
    display_name: Optional[str] = None
    number: Optional[str] = None


class InboundMessage(BaseModel):
    """Inbound message event delivered by the messaging transport"""
    chat_id: str
    text: str
    sender_is_self: bool = False
