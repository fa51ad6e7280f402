# Notifier - Operator-Visible Notices
# Stands in for the host's toast API: log, remember, fan out to sinks

"""
Notifier Module

Responsibilities:
- Emit operator-visible notices (info / warning / error)
- Keep the most recent notices for the control API
- Fan out to registered sinks (sync or async callables)
- Never let a failing sink break the caller
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Callable, List

from ..utils.logger import setup_logger

@dataclass
class Notice:
    """One operator notice"""
    level: str  # info, warning, error
    message: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return asdict(self)

class Notifier:
    """
    Operator notice channel

    Sinks are called with the Notice. Async sinks are scheduled on the
    running loop; without a running loop they are skipped.
    """

    ICONS = {"info": "✅", "warning": "⚠️", "error": "❌"}

    def __init__(self, history_size: int = 50):
        """
        Initialize notifier

        Args:
            history_size: Number of recent notices kept
        """
        self.logger = setup_logger("Notifier", "INFO")
        self._history: deque = deque(maxlen=history_size)
        self._sinks: List[Callable] = []
        self._pending: set = set()

    def add_sink(self, sink: Callable):
        """Register a callable receiving every Notice"""
        self._sinks.append(sink)

    def info(self, message: str) -> Notice:
        return self.notify("info", message)

    def warning(self, message: str) -> Notice:
        return self.notify("warning", message)

    def error(self, message: str) -> Notice:
        return self.notify("error", message)

    def notify(self, level: str, message: str) -> Notice:
        """
        Emit a notice

        Args:
            level: info, warning or error
            message: Text shown to the operator

        Returns:
            The Notice that was emitted
        """
        notice = Notice(level=level, message=message)
        self._history.append(notice)

        icon = self.ICONS.get(level, "")
        log = {"warning": self.logger.warning, "error": self.logger.error}.get(level, self.logger.info)
        log(f"{icon} {message}")

        for sink in list(self._sinks):
            self._deliver(sink, notice)
        return notice

    def _deliver(self, sink: Callable, notice: Notice):
        try:
            result = sink(notice)
            if asyncio.iscoroutine(result):
                try:
                    task = asyncio.get_running_loop().create_task(self._await_sink(result))
                except RuntimeError:
                    result.close()
                    self.logger.debug("No running loop, async sink skipped")
                    return
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        except Exception as e:
            self.logger.error(f"Notice sink error: {e}")

    async def _await_sink(self, coro):
        try:
            await coro
        except Exception as e:
            self.logger.error(f"Notice sink error: {e}")

    def recent(self, limit: int = 20) -> List[dict]:
        """Most recent notices, newest first"""
        items = list(self._history)[-limit:]
        items.reverse()
        return [n.to_dict() for n in items]
