"""
MODULE OVERVIEW:
The observer primitive the clients use to publish state changes and results.

WHAT IS HAPPENING HERE:
A minimal multicast hook: collaborators `subscribe()` a callback and can `unsubscribe()`
it again, so listener lists never grow without bound. Callbacks may be plain functions
or coroutine functions; awaitables are scheduled on the running loop. A failing
subscriber is logged and never stops the publisher.
"""
import asyncio
import inspect
from typing import Any, Callable, Generic, List, TypeVar

from loguru import logger

T = TypeVar("T")


class EventHook(Generic[T]):
    def __init__(self, name: str = "hook"):
        self.name = name
        self._subscribers: List[Callable[[T], Any]] = []

    def subscribe(self, callback: Callable[[T], Any]) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[T], Any]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def __len__(self) -> int:
        return len(self._subscribers)

    def emit(self, value: T) -> None:
        for sub in list(self._subscribers):
            try:
                maybe_awaitable = sub(value)
                if inspect.isawaitable(maybe_awaitable):
                    asyncio.ensure_future(maybe_awaitable)
            except Exception as e:
                logger.error(f"Error in {self.name} subscriber during emit: {e}")
