"""
Human/AI handoff state machine.

A chat is in AI mode unless it has an entry in the handoff set, in which case
a human operator owns its replies. Presence of the entry is the only record of
the mode; everything else derives from it.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from models.schemas import AssistantMode, HandoffState, HumanHandlerResult, ReleaseInfo

if TYPE_CHECKING:
    from core.conversation.context.thread import Thread

logger = logging.getLogger(__name__)


class HandoffStateMachine:
    """Tracks which chats are owned by a human operator and notifies handlers"""

    VALID_TRANSITIONS: Dict[AssistantMode, Set[AssistantMode]] = {
        AssistantMode.AI_MODE: {AssistantMode.HUMAN_MODE},
        # Re-entering human mode overwrites the current handoff
        AssistantMode.HUMAN_MODE: {AssistantMode.HUMAN_MODE, AssistantMode.AI_MODE},
    }

    def __init__(self):
        self._states: Dict[str, HandoffState] = {}
        self.on_handoff: Optional[Callable] = None
        self.on_message: Optional[Callable] = None
        self.on_release: Optional[Callable] = None

    def mode(self, chat_id: str) -> AssistantMode:
        return AssistantMode.HUMAN_MODE if chat_id in self._states else AssistantMode.AI_MODE

    def can_transition_to(self, chat_id: str, target: AssistantMode) -> bool:
        return target in self.VALID_TRANSITIONS[self.mode(chat_id)]

    def is_in_human_mode(self, chat_id: str) -> bool:
        return chat_id in self._states

    def get_state(self, chat_id: str) -> Optional[HandoffState]:
        return self._states.get(chat_id)

    def get_human_mode_chats(self) -> List[Dict[str, Any]]:
        return [{"chat_id": chat_id, **state.model_dump()} for chat_id, state in self._states.items()]

    def enter_human_mode(self, chat_id: str, reason: str = "",
                         metadata: Optional[Dict[str, Any]] = None,
                         handoff_time: Optional[float] = None) -> HandoffState:
        """Record (or overwrite) the handoff entry for a chat"""
        old_mode = self.mode(chat_id)
        state = HandoffState(
            handoff_time=time.time() if handoff_time is None else handoff_time,
            reason=reason,
            metadata=dict(metadata or {}),
            thread_id=chat_id,
        )
        self._states[chat_id] = state
        self._log_transition(chat_id, old_mode, AssistantMode.HUMAN_MODE, reason)
        return state

    def exit_human_mode(self, chat_id: str) -> Optional[HandoffState]:
        """Drop the handoff entry, returning it, or None if the chat was in AI mode"""
        state = self._states.pop(chat_id, None)
        if state is not None:
            self._log_transition(chat_id, AssistantMode.HUMAN_MODE, AssistantMode.AI_MODE, state.reason)
        return state

    def _log_transition(self, chat_id: str, old_mode: AssistantMode, new_mode: AssistantMode, reason: str):
        logger.info(
            f"Mode transition for {chat_id}: {old_mode.value} -> {new_mode.value}",
            extra={"chat_id": chat_id, "reason": reason}
        )

    def register_handlers(self, on_handoff: Optional[Callable] = None,
                          on_message: Optional[Callable] = None,
                          on_release: Optional[Callable] = None):
        """
        Register human operator handlers. Handlers may be plain functions or
        coroutine functions; passing None keeps the current handler.

        Args:
            on_handoff: Called as on_handoff(chat_id, thread, state)
            on_message: Called as on_message(chat_id, text, state), returns HumanHandlerResult
            on_release: Called as on_release(chat_id, thread, release_info)
        """
        if callable(on_handoff):
            self.on_handoff = on_handoff
        if callable(on_message):
            self.on_message = on_message
        if callable(on_release):
            self.on_release = on_release

    async def _invoke(self, name: str, handler: Optional[Callable], chat_id: str, *args) -> Any:
        if handler is None:
            return None
        try:
            result = handler(chat_id, *args)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except Exception as e:
            logger.error(f"Error in {name} handler for {chat_id}: {str(e)}",
                         extra={"chat_id": chat_id}, exc_info=True)
            return None

    async def notify_handoff(self, chat_id: str, thread: 'Thread', state: HandoffState):
        await self._invoke("handoff", self.on_handoff, chat_id, thread, state)

    async def notify_release(self, chat_id: str, thread: 'Thread', info: ReleaseInfo):
        await self._invoke("release", self.on_release, chat_id, thread, info)

    async def handle_message(self, chat_id: str, text: str) -> HumanHandlerResult:
        """Route a message of a human-mode chat to the operator handler"""
        result = await self._invoke("message", self.on_message, chat_id, text, self._states.get(chat_id))
        if result is None:
            return HumanHandlerResult()
        if isinstance(result, HumanHandlerResult):
            return result
        try:
            return HumanHandlerResult.model_validate(result)
        except ValidationError:
            logger.error(f"Message handler for {chat_id} returned an invalid result: {result!r}")
            return HumanHandlerResult()
