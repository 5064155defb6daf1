"""
Event Bus - Typed publish/subscribe for bot and registry events.

Callbacks are delivered in subscription order. A failing callback is
logged and never prevents delivery to the remaining subscribers or
propagates back into the trading loop. Coroutine callbacks are scheduled
on the running loop so ``emit`` stays synchronous.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from perpdesk.core.logger import get_logger

logger = get_logger("events")


class EventKind(str, Enum):
    LOG = "log"
    SIGNAL = "signal"
    TRADE = "trade"
    ANALYSIS = "analysis"
    STATUS_CHANGE = "status_change"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None

    def with_user(self, user_id: str) -> "Event":
        return replace(self, user_id=user_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
        }


EventCallback = Callable[[Event], Any]

# Subscribing with kind=None receives every event.
_ANY = "*"


class EventBus:
    """In-process event dispatcher keyed by EventKind."""

    def __init__(self, name: str = "bus"):
        self.name = name
        self._callbacks: Dict[str, List[EventCallback]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, kind: Optional[EventKind], callback: EventCallback) -> None:
        key = kind.value if kind is not None else _ANY
        self._callbacks[key].append(callback)

    def unsubscribe(self, kind: Optional[EventKind], callback: EventCallback) -> bool:
        key = kind.value if kind is not None else _ANY
        callbacks = self._callbacks.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def subscriber_count(self, kind: Optional[EventKind] = None) -> int:
        if kind is None:
            return sum(len(cbs) for cbs in self._callbacks.values())
        return len(self._callbacks.get(kind.value, []))

    def clear(self) -> None:
        self._callbacks.clear()

    def emit(self, event: Event) -> None:
        """Deliver ``event`` to kind subscribers, then wildcard subscribers."""
        # Copy so callbacks may unsubscribe during delivery
        targets = list(self._callbacks.get(event.kind.value, [])) + list(
            self._callbacks.get(_ANY, [])
        )
        for callback in targets:
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result, callback)
            except Exception as e:
                logger.error(
                    "Event callback error",
                    bus=self.name,
                    kind=event.kind.value,
                    callback=getattr(callback, "__name__", repr(callback)),
                    error=repr(e),
                )

    def _schedule(self, coro, callback: EventCallback) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(
                "Async event callback dropped (no running loop)",
                bus=self.name,
                callback=getattr(callback, "__name__", repr(callback)),
            )
            return
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event callback error", bus=self.name, error=repr(exc))
