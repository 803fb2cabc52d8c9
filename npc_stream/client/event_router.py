"""
MODULE OVERVIEW:
The per-NPC subscription registry.

WHAT IS HAPPENING HERE:
Each NPC id maps to exactly one handler. Registering an id again replaces its handler;
unregistering removes it. Reads and writes go through a lock because the embedding
application may (un)register from a different thread than the one running the
stream's event loop.
"""
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from npc_stream.shared.models import ChatResponse

ResponseHandler = Callable[[ChatResponse], Union[None, Awaitable[None], Any]]


class SubscriptionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, ResponseHandler] = {}

    def register(self, npc_id: str, handler: ResponseHandler) -> bool:
        if not npc_id:
            logger.error("Cannot register NPC with null or empty ID")
            return False
        with self._lock:
            replaced = npc_id in self._handlers
            self._handlers[npc_id] = handler
            total = len(self._handlers)
        if replaced:
            logger.info(f"Updated NPC response listener for: {npc_id}")
        else:
            logger.info(f"Registered NPC response listener for: {npc_id} (Total NPCs: {total})")
        return True

    def unregister(self, npc_id: str) -> bool:
        with self._lock:
            removed = self._handlers.pop(npc_id, None) is not None
            remaining = len(self._handlers)
        if removed:
            logger.info(f"Unregistered NPC response listener for: {npc_id} (Remaining NPCs: {remaining})")
        else:
            logger.warning(f"Attempted to unregister non-existent NPC: {npc_id}")
        return removed

    def get(self, npc_id: str) -> Optional[ResponseHandler]:
        with self._lock:
            return self._handlers.get(npc_id)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def __contains__(self, npc_id: str) -> bool:
        with self._lock:
            return npc_id in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
