# Heartbeat Manager - Keep Gateway Session Alive
# Periodic liveness frames on the interval announced by HELLO

"""
Heartbeat Manager Module

Responsibilities:
- Send a heartbeat immediately on HELLO, then every interval
- Send out-of-band heartbeats when the gateway requests one
- Record heartbeat ACKs (latency only, no timeout detection)
- Cancel the timer before it is replaced or when the socket closes
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from ..utils.logger import setup_logger

class HeartbeatManager:
    """
    Manages gateway heartbeats

    The actual frame is sent by the callback passed in (the gateway client
    knows the socket and the last sequence number). A missing ACK does not
    trigger anything: loss of liveness is detected by the transport close.
    """

    def __init__(
        self,
        send_heartbeat: Callable[[], Awaitable[bool]],
        sleep: Callable[[float], Awaitable] = asyncio.sleep
    ):
        """
        Initialize heartbeat manager

        Args:
            send_heartbeat: Async callable sending one heartbeat frame,
                returns True if a frame was written
            sleep: Sleep coroutine (injectable for tests)
        """
        self.send_heartbeat = send_heartbeat
        self._sleep = sleep
        self.interval_ms: Optional[int] = None
        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self.logger = setup_logger("HeartbeatManager", "INFO")

        # Statistics
        self._beats_sent = 0
        self._acks_received = 0
        self._last_sent_at: Optional[float] = None
        self._last_latency_ms: Optional[float] = None

    async def start(self, interval_ms: int):
        """
        Start heartbeating at the given interval

        Any previous timer is cancelled first, then one heartbeat is sent
        right away and the recurring timer is armed.

        Args:
            interval_ms: Heartbeat interval in milliseconds (from HELLO)
        """
        self.stop()
        self.interval_ms = interval_ms
        self.is_running = True
        self.logger.info(f"Heartbeat started: every {interval_ms}ms")

        await self.send_ping()
        self._task = asyncio.create_task(self._heartbeat_loop(interval_ms / 1000))

    def stop(self):
        """Cancel the heartbeat timer (safe to call when not running)"""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self.interval_ms = None
        if self.is_running:
            self.logger.debug("Heartbeat stopped")
        self.is_running = False

    async def send_ping(self) -> bool:
        """Send one heartbeat now"""
        sent = await self.send_heartbeat()
        if sent:
            self._beats_sent += 1
            self._last_sent_at = time.monotonic()
            self.logger.debug(f"Sent heartbeat #{self._beats_sent}")
        return sent

    def handle_pong(self):
        """Handle heartbeat ACK (op 11)"""
        self._acks_received += 1
        if self._last_sent_at is not None:
            self._last_latency_ms = (time.monotonic() - self._last_sent_at) * 1000
        self.logger.debug("Received heartbeat ACK")

    async def _heartbeat_loop(self, interval_seconds: float):
        """Background task sending a heartbeat every interval"""
        try:
            while True:
                await self._sleep(interval_seconds)
                await self.send_ping()
        except asyncio.CancelledError:
            self.logger.debug("Heartbeat loop cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Heartbeat loop error: {e}")

    def get_stats(self) -> dict:
        """Get heartbeat statistics"""
        return {
            "running": self.is_running,
            "interval_ms": self.interval_ms,
            "beats_sent": self._beats_sent,
            "acks_received": self._acks_received,
            "last_latency_ms": round(self._last_latency_ms, 1) if self._last_latency_ms is not None else None
        }
