"""
Assistant endpoints.

Generic inbound message processing plus the operator surface for human
handoff, statistics and thread deletion.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
import logging

from config import settings, AssistantConfig
from core.chat.template_parser import TemplateParser
from core.conversation.errors import HumanModeViolation, UnsupportedProviderError
from core.conversation.orchestration.assistant import Assistant
from core.conversation.orchestration.dispatcher import MessageDispatcher
from core.services.sms_service import TwilioSMSTransport
from models.schemas import AskOptions, HandoffState, ProcessOptions, ProcessResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assistant", tags=["Assistant"])

_dispatcher: Optional[MessageDispatcher] = None


def build_dispatcher() -> MessageDispatcher:
    """Wire the assistant, template parser and SMS transport from settings"""
    assistant = Assistant(AssistantConfig.from_settings(settings))
    transport = TwilioSMSTransport(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_PHONE_NUMBER,
    )
    return MessageDispatcher(assistant, TemplateParser(), transport)


def get_dispatcher() -> MessageDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
    return _dispatcher


async def close_dispatcher():
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.assistant.close()
        _dispatcher = None


def _raise_http_error(action: str, error: Exception):
    logger.error(f"Error during {action}: {str(error)}", exc_info=True)
    if isinstance(error, HumanModeViolation):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (UnsupportedProviderError, ValueError)):
        raise HTTPException(status_code=400, detail=str(error))
    raise HTTPException(status_code=500, detail=f"Error during {action}")


class MessageRequest(BaseModel):
    """Inbound message request model"""
    chat_id: str
    text: str
    templates: Optional[List[str]] = None
    fallback_to_ai: bool = True
    handoff_on_error: bool = False
    ai_options: AskOptions = Field(default_factory=AskOptions)


class HandoffRequest(BaseModel):
    chat_id: str
    reason: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReleaseRequest(BaseModel):
    chat_id: str
    summary: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HandoffResponse(BaseModel):
    success: bool
    handoff_state: Optional[HandoffState] = None


@router.post("/messages", response_model=ProcessResult)
async def process_message(request: MessageRequest, dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    """Run one inbound message through handoff checks, templates and the assistant"""
    logger.info(
        "Message received",
        extra={"chat_id": request.chat_id, "message_length": len(request.text)}
    )
    options = ProcessOptions(
        fallback_to_ai=request.fallback_to_ai,
        handoff_on_error=request.handoff_on_error,
        templates=request.templates,
        ai_options=request.ai_options,
    )
    try:
        return await dispatcher.process_message(request.chat_id, request.text, options)
    except Exception as e:
        _raise_http_error("message processing", e)


@router.post("/handoff", response_model=HandoffResponse)
async def handoff_to_human(request: HandoffRequest, dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    assistant = dispatcher.assistant
    try:
        success = await assistant.handoff_to_human(request.chat_id, request.reason, request.metadata)
    except Exception as e:
        _raise_http_error("handoff", e)
    return HandoffResponse(success=success, handoff_state=assistant.handoff.get_state(request.chat_id))


@router.post("/release", response_model=HandoffResponse)
async def release_to_ai(request: ReleaseRequest, dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    try:
        success = await dispatcher.assistant.release_to_ai(request.chat_id, request.summary, request.metadata)
    except Exception as e:
        _raise_http_error("release", e)
    return HandoffResponse(success=success)


@router.get("/human-mode")
async def get_human_mode_chats(dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    chats = dispatcher.assistant.get_human_mode_chats()
    return {"chats": chats, "count": len(chats)}


@router.get("/stats")
async def get_stats(dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    return dispatcher.assistant.get_stats()


@router.delete("/threads/{chat_id}")
async def delete_thread(chat_id: str, dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    try:
        deleted = await dispatcher.assistant.delete_thread(chat_id)
    except Exception as e:
        _raise_http_error("thread deletion", e)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Thread {chat_id} not found")
    return {"deleted": True, "chat_id": chat_id}
