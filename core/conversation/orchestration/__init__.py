"""Assistant orchestration components"""

from .assistant import Assistant, RegisteredFunction
from .dispatcher import MessageDispatcher
from .handoff import HandoffStateMachine
from .locks import ChatLocks

__all__ = [
    'Assistant',
    'RegisteredFunction',
    'MessageDispatcher',
    'HandoffStateMachine',
    'ChatLocks',
]
