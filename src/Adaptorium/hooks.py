"""Ordered subscriber hooks.

Subscribers run one at a time in the order they were tapped. A subscriber
that raises stops the remaining subscribers and the exception propagates to
whoever invoked the hook.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable

import structlog

log = structlog.get_logger()


class Hook:
    def __init__(self, name: str = "hook"):
        self.name = name
        self._subscribers: list[Callable[..., Any]] = []

    def tap(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        """Subscribe ``callback``; returns it so ``tap`` can be used as a decorator."""
        self._subscribers.append(callback)
        return callback

    def untap(self, callback: Callable[..., Any]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._subscribers)

    async def invoke(self, *args: Any, **kwargs: Any) -> None:
        for callback in list(self._subscribers):
            log.debug("hook.invoke", hook=self.name, subscriber=getattr(callback, "__name__", repr(callback)))
            result = callback(*args, **kwargs)
            if inspect.isawaitable(result):
                await result
