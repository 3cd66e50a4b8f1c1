"""
In-process locks keyed by chat id. Held around load -> run -> save so two requests on the
same chat do not overwrite each other's history. Entries are dropped when no one holds or
waits for them.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)

# chat_id -> (lock, number of holders + waiters)
_locks: dict[str, tuple[asyncio.Lock, int]] = {}


@asynccontextmanager
async def conversation_lock(chat_id: str) -> AsyncIterator[None]:
    lock, users = _locks.get(chat_id, (None, 0))
    if lock is None:
        lock = asyncio.Lock()
    _locks[chat_id] = (lock, users + 1)
    if lock.locked():
        logger.debug(f"Waiting for chat {chat_id} lock")
    try:
        async with lock:
            yield
    finally:
        lock, users = _locks[chat_id]
        if users <= 1:
            del _locks[chat_id]
        else:
            _locks[chat_id] = (lock, users - 1)


def active_locks() -> int:
    return len(_locks)
