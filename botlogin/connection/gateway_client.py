# Gateway Client - Connection Management
# Bot session over the real-time gateway socket

"""
Gateway Client Module

Responsibilities:
- Discover the gateway URL and open the socket
- Identify (fresh login) or resume an existing session
- Route inbound frames by opcode (dispatch, heartbeat, reconnect, ...)
- Reconnect with bounded exponential backoff
- Clean shutdown

Everything runs on one asyncio loop: socket reads, the heartbeat timer and
the reconnect timer. At most one socket is owned at a time; a previous
socket is always closed before a new one is opened, and closes of a
superseded socket are ignored.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Callable, Dict, Optional

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .errors import DiscoveryError, ResumeGuardFailure, TransportError
from .gateway_discovery import GatewayDiscovery
from .heartbeat_manager import HeartbeatManager
from .reconnect_policy import (
    ABNORMAL_CLOSE_CODE,
    CLEAN_CLOSE_CODE,
    ReconnectAction,
    ReconnectPolicy,
)
from .session_state import SessionState
from ..alerts.notifier import Notifier
from ..processors.dispatch_router import DispatchRouter
from ..processors.gateway_frames import (
    DEFAULT_LARGE_THRESHOLD,
    DEFAULT_PROPERTIES,
    FrameParser,
    GatewayFrame,
    GatewayOpcode,
    heartbeat_frame,
    identify_frame,
    resume_frame,
)
from ..storage.config_store import ConfigStore
from ..utils.helpers import build_gateway_url, mask_token
from ..utils.logger import setup_logger

class ConnectionState(Enum):
    """Gateway connection states"""
    IDLE = "idle"
    CONNECTING = "connecting"
    IDENTIFYING = "identifying"
    RESUMING = "resuming"
    CONNECTED = "connected"

class GatewayClient:
    """
    Bot gateway client

    Features:
    - Fresh login (IDENTIFY) or session resumption (RESUME)
    - Heartbeat on the server-announced interval
    - Auto-reconnect with exponential backoff (max 5 attempts)
    - Dispatch routing by event name
    - Operator notices for every user-visible outcome

    Token and intents are read from the config store on every reconnect.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        notifier: Optional[Notifier] = None,
        discovery: Optional[GatewayDiscovery] = None,
        router: Optional[DispatchRouter] = None,
        connect_factory: Optional[Callable] = None,
        sleep: Callable = asyncio.sleep,
        api_version: int = 10,
        encoding: str = "json",
        max_reconnect_attempts: int = 5,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        identify_properties: Optional[Dict[str, str]] = None,
        large_threshold: int = DEFAULT_LARGE_THRESHOLD
    ):
        """
        Initialize gateway client

        Args:
            config_store: Source of bot token and intents
            notifier: Operator notice channel
            discovery: Gateway URL lookup
            router: Dispatch event router
            connect_factory: Coroutine opening the socket (websockets connect)
            sleep: Sleep coroutine used for reconnect backoff
            api_version: Gateway API version (query parameter v)
            encoding: Gateway payload encoding
            max_reconnect_attempts: Retries before giving up
            base_delay_ms: Backoff base in milliseconds
            max_delay_ms: Backoff cap in milliseconds
            identify_properties: Connection properties sent with IDENTIFY
            large_threshold: large_threshold sent with IDENTIFY
        """
        self.config_store = config_store
        self.notifier = notifier or Notifier()
        self.discovery = discovery or GatewayDiscovery()
        self.router = router or DispatchRouter()
        self._connect_factory = connect_factory or websocket_connect
        self._sleep = sleep
        self.api_version = api_version
        self.encoding = encoding
        self.identify_properties = identify_properties or dict(DEFAULT_PROPERTIES)
        self.large_threshold = large_threshold

        # Session and connection state
        self.session = SessionState()
        self.policy = ReconnectPolicy(max_reconnect_attempts, base_delay_ms, max_delay_ms)
        self.heartbeat = HeartbeatManager(self.send_heartbeat)
        self.parser = FrameParser()
        self.connection = None
        self.state = ConnectionState.IDLE
        self.user: Optional[dict] = None
        self._stopping = False

        # Tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # Statistics
        self._stats = {
            "frames_received": 0,
            "frames_sent": 0,
            "dispatches": 0,
            "reconnects_scheduled": 0,
            "sessions_started": 0,
            "sessions_resumed": 0,
        }

        self.logger = setup_logger("GatewayClient", "INFO")

        self.router.on("READY", self._on_ready)
        self.router.on("RESUMED", self._on_resumed)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: Optional[str] = None, intents: Optional[int] = None) -> bool:
        """
        Fresh login: discover the gateway URL, then open the socket

        Args:
            token: Bot token (defaults to the stored one)
            intents: Intents bitmask (defaults to the stored one)

        Returns:
            True if a socket was opened, False otherwise
        """
        if self.is_bot_socket_open():
            self.notifier.warning("Already connected.")
            return False

        token = self.config_store.bot_token if token is None else token
        intents = self.config_store.intents if intents is None else intents
        if not token:
            self.notifier.warning("Please enter a bot token.")
            return False

        self._stopping = False
        self._cancel_reconnect()
        return await self._connect_fresh(token, intents)

    async def _connect_fresh(self, token: str, intents: int) -> bool:
        # A fresh identify starts a new session
        self.session.clear_session()
        self.state = ConnectionState.CONNECTING
        self.logger.info(f"Looking up gateway for token {mask_token(token)}...")

        try:
            url = await self.discovery.fetch_gateway_url(token)
        except DiscoveryError as e:
            self.logger.error(f"Gateway discovery failed: {e}")
            self.notifier.error(f"Connect failed: {e}")
            if self.connection is None:
                self.state = ConnectionState.IDLE
            return False

        return await self.establish(url, token, intents)

    async def establish(self, url: str, token: str, intents: int, resume: bool = False) -> bool:
        """
        Open the gateway socket and send the handshake

        Args:
            url: Gateway URL (scheme and query are normalized)
            token: Bot token
            intents: Intents bitmask
            resume: Send RESUME instead of IDENTIFY once open

        Returns:
            True if the socket was opened, False otherwise
        """
        if self._stopping:
            self.logger.info("Stopping - gateway socket not opened")
            return False

        await self._close_stale()

        self.session.gateway_url = url
        full_url = build_gateway_url(url, self.api_version, self.encoding)
        self.state = ConnectionState.RESUMING if resume else ConnectionState.IDENTIFYING
        self.logger.info(f"Connecting to {full_url} ({'resume' if resume else 'identify'})...")

        try:
            connection = await self._connect_factory(
                full_url,
                ping_interval=None,  # Gateway heartbeats are handled manually
                close_timeout=10,
                max_size=None
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Transport error: {TransportError(e)}")
            await self._handle_close(ABNORMAL_CLOSE_CODE)
            return False

        if self._stopping:
            # disconnect() ran while the socket was opening
            await self._close_quietly(connection, CLEAN_CLOSE_CODE, "User disconnected")
            return False

        self.connection = connection

        if resume:
            await self.send_resume()
        else:
            await self.send_identify(token, intents)

        self._receive_task = asyncio.create_task(self._receive_loop(connection))
        return True

    async def disconnect(self, reason: str = "User disconnected", notify: bool = True):
        """
        Close the gateway socket and reset all state

        The stopping flag is set before the close so the close handling sees
        a deliberate shutdown. Safe to call with no socket.

        Args:
            reason: Close reason sent to the gateway
            notify: Emit a "Bot disconnected." notice
        """
        self._stopping = True
        connection = self.connection
        self.connection = None
        self._cancel_reconnect()

        if connection is not None:
            self.logger.info(f"Disconnecting: {reason}")
            await self._close_quietly(connection, CLEAN_CLOSE_CODE, reason)

        self.reset_state()
        if notify:
            self.notifier.info("Bot disconnected.")

    async def shutdown(self):
        """Unload: disconnect without a notice"""
        await self.disconnect(reason="Plugin unloading", notify=False)

    def reset_state(self):
        """Clear session, counters, timers and the socket handle"""
        self.heartbeat.stop()
        self._cancel_reconnect()
        self.connection = None
        self.session.reset()
        self.policy.reset()
        self.user = None
        self.state = ConnectionState.IDLE

    async def _close_stale(self):
        connection = self.connection
        self.connection = None
        self.heartbeat.stop()
        if connection is not None:
            self.logger.debug("Closing previous gateway socket")
            await self._close_quietly(connection, CLEAN_CLOSE_CODE, "Reconnecting")

    async def _close_quietly(self, connection, code: int, reason: str):
        try:
            await connection.close(code=code, reason=reason)
        except Exception as e:
            self.logger.warning(f"Error closing gateway socket: {e}")

    # ------------------------------------------------------------------
    # Outbound frames
    # ------------------------------------------------------------------

    async def _send(self, frame: dict) -> bool:
        connection = self.connection
        if connection is None or connection.state is not State.OPEN:
            self.logger.debug(f"Not sending op {frame.get('op')}: socket not open")
            return False

        try:
            await connection.send(json.dumps(frame))
        except ConnectionClosed as e:
            self.logger.warning(f"Transport error: {TransportError(e)}")
            return False
        except Exception as e:
            self.logger.error(f"Failed to send op {frame.get('op')}: {e}")
            return False

        self._stats["frames_sent"] += 1
        return True

    async def send_heartbeat(self) -> bool:
        """Send a heartbeat with the last sequence number (no-op if not open)"""
        return await self._send(heartbeat_frame(self.session.sequence))

    async def send_identify(self, token: str, intents: int) -> bool:
        """Send IDENTIFY (fresh login)"""
        self.state = ConnectionState.IDENTIFYING
        sent = await self._send(identify_frame(
            token,
            intents,
            properties=self.identify_properties,
            large_threshold=self.large_threshold
        ))
        if sent:
            self.logger.info(f"Sent IDENTIFY (intents={intents})")
        return sent

    async def send_resume(self) -> bool:
        """
        Send RESUME for the stored session

        Falls back to a fresh login when token, session id or sequence is
        missing.
        """
        token = self.config_store.bot_token
        try:
            frame = resume_frame(token, self.session.session_id, self.session.sequence)
        except ResumeGuardFailure as e:
            self.logger.info(f"{e} - identifying instead")
            return await self._identify_fallback(token)

        self.state = ConnectionState.RESUMING
        sent = await self._send(frame)
        if sent:
            self.logger.info(
                f"Sent RESUME (session={self.session.session_id}, seq={self.session.sequence})"
            )
        return sent

    async def _identify_fallback(self, token: str) -> bool:
        if not token:
            self.logger.error("No bot token configured - cannot identify")
            self.reset_state()
            return False

        self.session.clear_session()
        intents = self.config_store.intents
        if self.is_bot_socket_open():
            return await self.send_identify(token, intents)
        return await self._connect_fresh(token, intents)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _receive_loop(self, connection):
        """Background task reading frames until the socket closes"""
        try:
            async for raw in connection:
                self._stats["frames_received"] += 1
                frame = self.parser.parse(raw)
                if frame is None:
                    continue
                try:
                    await self.handle_frame(frame)
                except Exception as e:
                    self.logger.error(f"Error handling op {frame.op}: {e}")

        except asyncio.CancelledError:
            self.logger.debug("Receive loop cancelled")
            raise
        except ConnectionClosed:
            pass
        except Exception as e:
            self.logger.error(f"Transport error: {TransportError(e)}")

        if connection is not self.connection:
            self.logger.debug("Previous gateway socket closed")
            return

        self.connection = None
        code = getattr(connection, "close_code", None)
        await self._handle_close(code if code is not None else ABNORMAL_CLOSE_CODE)

    async def handle_frame(self, frame: GatewayFrame):
        """
        Route one inbound frame by opcode

        Unknown opcodes are ignored.
        """
        self.session.track_sequence(frame.s)
        op = frame.opcode

        if op is GatewayOpcode.DISPATCH:
            self._stats["dispatches"] += 1
            await self.router.dispatch(frame.t, frame.d)

        elif op is GatewayOpcode.HEARTBEAT:
            await self.heartbeat.send_ping()

        elif op is GatewayOpcode.RECONNECT:
            self.logger.info("Gateway requested reconnect")
            self._schedule_reconnect(0, force_identify=False)

        elif op is GatewayOpcode.INVALID_SESSION:
            if frame.d:
                self.logger.warning("Invalid session (resumable) - resuming")
                await self.send_resume()
            else:
                self.logger.warning("Invalid session - identifying from scratch")
                self.session.clear_session()
                self._schedule_reconnect(0, force_identify=True)

        elif op is GatewayOpcode.HELLO:
            interval = frame.d.get("heartbeat_interval") if isinstance(frame.d, dict) else None
            if isinstance(interval, (int, float)) and interval > 0:
                await self.heartbeat.start(interval)
            else:
                self.logger.error(f"HELLO without heartbeat interval: {frame.d!r}")

        elif op is GatewayOpcode.HEARTBEAT_ACK:
            self.heartbeat.handle_pong()

        else:
            self.logger.debug(f"Ignoring op {frame.op}")

    async def _on_ready(self, payload: Any):
        payload = payload if isinstance(payload, dict) else {}
        self.session.session_id = payload.get("session_id")
        if payload.get("resume_gateway_url"):
            self.session.gateway_url = payload["resume_gateway_url"]
        self.policy.reset()
        self.state = ConnectionState.CONNECTED
        self._stats["sessions_started"] += 1

        self.user = payload.get("user") or {}
        username = self.user.get("username", "unknown")
        discriminator = self.user.get("discriminator", "0")
        self.notifier.info(f"Connected as {username}#{discriminator}")

    async def _on_resumed(self, payload: Any):
        self.policy.reset()
        self.state = ConnectionState.CONNECTED
        self._stats["sessions_resumed"] += 1
        self.logger.info(f"Session resumed (seq={self.session.sequence})")

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    async def _handle_close(self, code: Optional[int]):
        """Apply the reconnect policy to a socket close"""
        self.heartbeat.stop()
        decision = self.policy.on_close(code, self._stopping)

        if decision.action is ReconnectAction.STOP:
            self.reset_state()

        elif decision.action is ReconnectAction.RETRY:
            self.state = ConnectionState.IDLE
            self._schedule_reconnect(decision.delay_ms, force_identify=False)

        else:
            self.notifier.error("Bot disconnected. Max reconnects reached.")
            self.reset_state()

    def _schedule_reconnect(self, delay_ms: int, force_identify: bool = False):
        self._cancel_reconnect()
        self._stats["reconnects_scheduled"] += 1
        self._reconnect_task = asyncio.create_task(
            self._delayed_reconnect(delay_ms, force_identify)
        )

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _delayed_reconnect(self, delay_ms: int, force_identify: bool):
        try:
            if delay_ms:
                await self._sleep(delay_ms / 1000)
            await self.reconnect(force_identify)
        except asyncio.CancelledError:
            self.logger.debug("Reconnect cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Reconnect failed: {e}")

    async def reconnect(self, force_identify: bool = False) -> bool:
        """
        Reconnect after a close or a server request

        Resumes when session id, sequence and gateway URL are known and
        force_identify is False; otherwise logs in from scratch.

        Args:
            force_identify: Drop the session and identify again

        Returns:
            True if a socket was opened, False otherwise
        """
        await self._close_stale()

        token = self.config_store.bot_token
        intents = self.config_store.intents
        if not token:
            self.logger.error("No bot token configured - cannot reconnect")
            self.reset_state()
            return False

        if force_identify:
            self.session.clear_session()
            return await self._connect_fresh(token, intents)

        if self.session.can_resume():
            return await self.establish(self.session.gateway_url, token, intents, resume=True)

        return await self._connect_fresh(token, intents)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_bot_socket_open(self) -> bool:
        """True while a gateway socket is open (host token guard predicate)"""
        return self.connection is not None and self.connection.state is State.OPEN

    def is_stopping(self) -> bool:
        return self._stopping

    def on_event(self, event_name: str, handler: Callable):
        """Register a dispatch event handler"""
        self.router.on(event_name, handler)

    def on_any_event(self, handler: Callable):
        """Register a handler for dispatch events without a specific handler"""
        self.router.on_any(handler)

    def get_state(self) -> ConnectionState:
        return self.state

    def get_status(self) -> dict:
        """Snapshot for the control API"""
        heartbeat = self.heartbeat.get_stats()
        return {
            "state": self.state.value,
            "connected": self.is_bot_socket_open(),
            "user": (self.user or {}).get("username"),
            "has_session": bool(self.session.session_id),
            "sequence": self.session.sequence,
            "gateway_url": self.session.gateway_url,
            "reconnect_attempts": self.policy.attempts,
            "heartbeat_interval_ms": heartbeat["interval_ms"],
            "heartbeat_latency_ms": heartbeat["last_latency_ms"],
        }

    def get_stats(self) -> dict:
        """Get client statistics"""
        return {
            **self._stats,
            "heartbeat": self.heartbeat.get_stats(),
            "parser": self.parser.get_stats(),
            "router": self.router.get_stats(),
        }
