"""
Inbound message dispatch.

``MessageDispatcher.process_message`` takes exactly one decision per inbound
message, checked in this order:

1. chat already in human mode: route to the human message handler
2. user handoff tag (``#handoff``, ``#human``, ``#agent``): hand off
3. a requested template parses valid: template result
4. otherwise ask the assistant (or report ``unmatched`` when AI fallback is
   off), handing off if the reply carries an AI handoff tag
"""

import logging
import re
from typing import Optional

from core.chat.template_parser import TemplateParser
from core.conversation.errors import HumanModeViolation
from core.conversation.orchestration.assistant import Assistant
from core.services.sms_service import MessagingTransport
from models.schemas import InboundMessage, ProcessOptions, ProcessResult

logger = logging.getLogger(__name__)

HANDOFF_MESSAGE = "I'm transferring you to a human agent who will assist you shortly."
ERROR_HANDOFF_MESSAGE = f"I'm having trouble processing your request. {HANDOFF_MESSAGE}"

USER_HANDOFF_TAGS = ("#handoff", "#human", "#agent")
USER_HANDOFF_REASON = re.compile(r"#(handoff|human|agent)\s+(.+)", re.IGNORECASE)
DEFAULT_USER_REASON = "User requested human assistance"

AI_HANDOFF_TAG = re.compile(r"\[(handoff|human needed)[^\]]*\]", re.IGNORECASE)
AI_HANDOFF_REASON = re.compile(r"\[(handoff|human needed)\s*:?\s*([^\]]+)\]", re.IGNORECASE)
DEFAULT_AI_REASON = "AI requested human assistance"

ERROR_REASON = "processing error"


class MessageDispatcher:
    """Routes inbound messages between templates, the assistant and human operators"""

    def __init__(self, assistant: Assistant, parser: Optional[TemplateParser] = None,
                 transport: Optional[MessagingTransport] = None):
        self.assistant = assistant
        self.parser = parser or TemplateParser()
        self.transport = transport

    async def handle_inbound(self, event: InboundMessage,
                             options: Optional[ProcessOptions] = None) -> Optional[ProcessResult]:
        """Process an inbound event and reply through the transport"""
        if event.sender_is_self:
            return None

        result = await self.process_message(event.chat_id, event.text, options)

        if result.response and self.transport is not None:
            await self.transport.send_message(event.chat_id, result.response)
        return result

    async def process_message(self, chat_id: str, text: str,
                              options: Optional[ProcessOptions] = None) -> ProcessResult:
        """
        Take one decision for an inbound message.

        Args:
            chat_id: Chat identifier
            text: Message text
            options: Template names, AI fallback and error handoff settings

        Returns:
            The decision taken and the response to show, if any
        """
        options = options or ProcessOptions()

        if self.assistant.is_in_human_mode(chat_id):
            return await self._route_to_human(chat_id, text)

        if any(tag in text.lower() for tag in USER_HANDOFF_TAGS):
            match = USER_HANDOFF_REASON.search(text)
            reason = match.group(2).strip() if match else DEFAULT_USER_REASON
            await self.assistant.handoff_to_human(chat_id, reason, {
                "trigger_message": text,
                "automatic": False,
            })
            return ProcessResult(
                type="handoff",
                response=HANDOFF_MESSAGE,
                handoff_state=self.assistant.handoff.get_state(chat_id),
            )

        template_result = self._match_template(text, options)
        if template_result is not None:
            return template_result

        if not options.fallback_to_ai:
            return ProcessResult(type="unmatched")

        try:
            response = await self.assistant.ask(chat_id, text, options.ai_options)
        except HumanModeViolation:
            # Handed off while this message was waiting on the chat
            return await self._route_to_human(chat_id, text)
        except Exception as e:
            logger.error(f"Error processing message with AI for {chat_id}: {str(e)}",
                         extra={"chat_id": chat_id})
            if not options.handoff_on_error:
                raise

            await self.assistant.handoff_to_human(chat_id, ERROR_REASON, {
                "error": str(e),
                "trigger_message": text,
                "automatic": True,
            })
            return ProcessResult(
                type="handoff",
                response=ERROR_HANDOFF_MESSAGE,
                handoff_state=self.assistant.handoff.get_state(chat_id),
                error=str(e),
            )

        response = response or ""
        if AI_HANDOFF_TAG.search(response):
            match = AI_HANDOFF_REASON.search(response)
            reason = match.group(2).strip() if match else DEFAULT_AI_REASON
            clean_response = AI_HANDOFF_TAG.sub("", response).strip()

            await self.assistant.handoff_to_human(chat_id, reason, {
                "trigger_message": text,
                "ai_response": clean_response,
                "automatic": True,
            })
            return ProcessResult(
                type="handoff",
                response=clean_response or HANDOFF_MESSAGE,
                handoff_state=self.assistant.handoff.get_state(chat_id),
            )

        return ProcessResult(type="ai", response=response)

    async def _route_to_human(self, chat_id: str, text: str) -> ProcessResult:
        result = await self.assistant.handoff.handle_message(chat_id, text)
        return ProcessResult(
            type="human",
            response=result.response,
            handled=result.handled,
            handoff_state=self.assistant.handoff.get_state(chat_id),
        )

    def _match_template(self, text: str, options: ProcessOptions) -> Optional[ProcessResult]:
        """First requested template that parses valid and extracted at least one of its fields"""
        for name in options.templates or []:
            template = self.parser.get_template(name)
            if template is None:
                logger.warning(f"Template {name} is not registered")
                continue

            parsed = self.parser.parse_message(text, template)
            if parsed.is_valid and any(field in parsed.data for field in template.fields):
                logger.debug(f"Message matched template {name}")
                return ProcessResult(type="template", template=name, data=parsed.data)
        return None
