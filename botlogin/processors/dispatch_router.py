# Dispatch Router - Named Event Routing
# Routes DISPATCH (op 0) events to registered handlers

"""
Dispatch Router Module

Responsibilities:
- Register handlers per event name (case-insensitive)
- Forward unhandled events to catch-all handlers
- Isolate handler failures (logged, never raised)
- Track per-event statistics
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List

from ..utils.logger import setup_logger

class DispatchRouter:
    """
    Event-name handler table for gateway dispatch events

    Handlers may be sync or async and receive the event payload. Catch-all
    handlers registered with on_any() receive (event_name, payload) for
    every event that has no specific handler.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._catch_all: List[Callable] = []
        self._event_counts: Dict[str, int] = defaultdict(int)
        self._handler_errors = 0
        self.logger = setup_logger("DispatchRouter", "INFO")

    @staticmethod
    def normalize(event_name: str) -> str:
        return (event_name or "").strip().upper()

    def on(self, event_name: str, handler: Callable):
        """Register a handler for one event name"""
        self._handlers[self.normalize(event_name)].append(handler)

    def on_any(self, handler: Callable):
        """Register a handler for events without a specific handler"""
        self._catch_all.append(handler)

    def has_handler(self, event_name: str) -> bool:
        return bool(self._handlers.get(self.normalize(event_name)))

    async def dispatch(self, event_name: str, payload: Any) -> int:
        """
        Route one dispatch event

        Args:
            event_name: Event name from the frame's "t" field
            payload: Frame "d" field

        Returns:
            Number of handlers invoked
        """
        name = self.normalize(event_name)
        self._event_counts[name or "UNKNOWN"] += 1

        handlers = self._handlers.get(name)
        if handlers:
            for handler in list(handlers):
                await self._invoke(handler, name, payload)
            return len(handlers)

        for handler in list(self._catch_all):
            await self._invoke(handler, name, name, payload)
        return len(self._catch_all)

    async def _invoke(self, handler: Callable, name: str, *args):
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self._handler_errors += 1
            self.logger.error(f"Handler error for {name}: {e}")

    def get_stats(self) -> dict:
        """Get router statistics"""
        return {
            "events": dict(self._event_counts),
            "total_events": sum(self._event_counts.values()),
            "handler_errors": self._handler_errors
        }
