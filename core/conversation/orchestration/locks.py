"""Per-chat mutual exclusion"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class ChatLocks:
    """
    One ``asyncio.Lock`` per chat.

    Operations on different chats never wait on each other. Locks are dropped
    again once nobody holds or waits on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, chat_id: str):
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._waiters[chat_id] = self._waiters.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[chat_id] -= 1
            if self._waiters[chat_id] == 0:
                del self._waiters[chat_id]
                self._locks.pop(chat_id, None)

    def is_busy(self, chat_id: str) -> bool:
        """Whether the chat lock is held or awaited"""
        return self._waiters.get(chat_id, 0) > 0

    def __len__(self) -> int:
        return len(self._locks)
