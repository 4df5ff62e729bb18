"""Handler registration and failure-isolated dispatch.

Transports, the wrapper supervisor and the daemon all fan items out to a
set of callbacks. A callback may be a plain function or return an
awaitable; either way a failing callback is logged and never stops
delivery to the others.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[T], Any]


class HandlerSet(Generic[T]):
    """Ordered set of callbacks with isolated dispatch.

    Example:
        >>> handlers: HandlerSet[dict] = HandlerSet("unix-socket")
        >>> handlers.add(print)
        >>> handlers.dispatch({"a": 1})
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: list[Handler[T]] = []
        self._pending: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, handler: object) -> bool:
        return handler in self._handlers

    def add(self, handler: Handler[T]) -> None:
        """Register a handler. Adding the same handler twice is a no-op."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove(self, handler: Handler[T]) -> None:
        """Unregister a handler. Unknown handlers are ignored."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()

    def dispatch(self, item: T) -> None:
        """Deliver an item to every handler.

        Sync handlers run inline. Awaitable results are scheduled on the
        running loop and their failures logged when they complete.
        """
        for handler in list(self._handlers):
            try:
                result = handler(item)
            except Exception:
                logger.error("%s handler %r failed", self._name, handler, exc_info=True)
                continue

            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._on_done)

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("%s async handler failed: %s", self._name, exc, exc_info=exc)
