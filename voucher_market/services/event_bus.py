from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

Handler = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)


class EventBus:
    """Synchronous in-process dispatch. A failing handler is logged and the rest still run."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def emit(self, event_name: str, payload: dict[str, Any]) -> int:
        handlers = list(self._handlers.get(event_name, []))
        if not handlers:
            logger.debug("no handlers for event=%s", event_name)
            return 0
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("event handler failed event=%s handler=%s", event_name, getattr(handler, "__name__", handler))
        return delivered

    def subscribe(self, event_name: str, handler: Handler) -> None:
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        if handler in self._handlers.get(event_name, []):
            self._handlers[event_name].remove(handler)


event_bus = EventBus()
