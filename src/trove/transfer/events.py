"""
Minimal observer hub for transfer progress.

Listeners are plain callables invoked synchronously with the item the event
is about. A listener that raises is logged and skipped; it never breaks the
transfer that emitted the event.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

EVENTS = (PROGRESS, COMPLETED, FAILED, CANCELLED)

Listener = Callable[[Any], None]


class TransferEvents:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        if event not in EVENTS:
            raise ValueError(f"Unknown transfer event: {event}")
        self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, item: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(item)
            except Exception:
                logger.exception("Transfer listener for %r failed", event)
