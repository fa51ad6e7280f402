# Gateway Frames - JSON Frame Parsing and Building
# Wire format: {"op": int, "d": any, "s": int|null, "t": str|null}

"""
Gateway Frames Module

Responsibilities:
- Parse JSON frames received from the gateway socket
- Convert to GatewayFrame objects
- Handle malformed frames (logged and dropped, never raised)
- Build outbound identify / resume / heartbeat frames
"""

import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional, Union

from ..connection.errors import ResumeGuardFailure
from ..utils.helpers import authorization_token
from ..utils.logger import setup_logger

class GatewayOpcode(IntEnum):
    """Gateway opcodes"""
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11

DEFAULT_PROPERTIES = {"os": "android", "browser": "BotLogin", "device": "BotLogin"}
DEFAULT_LARGE_THRESHOLD = 250

@dataclass
class GatewayFrame:
    """Decoded inbound gateway frame"""
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def opcode(self) -> Optional[GatewayOpcode]:
        """Known opcode, or None for opcodes this client doesn't know"""
        try:
            return GatewayOpcode(self.op)
        except ValueError:
            return None

class FrameParser:
    """
    Parser for gateway socket frames

    Handles:
    - JSON decoding (text or bytes)
    - Field type normalization
    - Error handling and statistics
    """

    def __init__(self):
        """Initialize frame parser"""
        self.logger = setup_logger("FrameParser", "INFO")
        self._parse_count = 0
        self._error_count = 0

    def parse(self, raw_frame: Union[str, bytes]) -> Optional[GatewayFrame]:
        """
        Parse raw JSON frame

        Args:
            raw_frame: Raw JSON text (or UTF-8 bytes) from the socket

        Returns:
            GatewayFrame if successful, None otherwise
        """
        self._parse_count += 1
        try:
            data = json.loads(raw_frame)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._error_count += 1
            self.logger.error(f"JSON decode error: {e}")
            self.logger.debug(f"Raw frame: {str(raw_frame)[:100]}...")
            return None

        if not isinstance(data, dict):
            self._error_count += 1
            self.logger.error(f"Frame is not a JSON object: {type(data).__name__}")
            return None

        op = data.get("op")
        if not isinstance(op, int) or isinstance(op, bool):
            self._error_count += 1
            self.logger.error(f"Frame without integer opcode: {op!r}")
            return None

        seq = data.get("s")
        if not isinstance(seq, int) or isinstance(seq, bool):
            seq = None

        event_name = data.get("t")
        if not isinstance(event_name, str):
            event_name = None

        frame = GatewayFrame(op=op, d=data.get("d"), s=seq, t=event_name, raw=data)
        self.logger.debug(f"Parsed frame #{self._parse_count}: op={op} t={event_name} s={seq}")
        return frame

    def get_stats(self) -> dict:
        """Get parser statistics"""
        return {
            "total_parsed": self._parse_count,
            "total_errors": self._error_count,
            "success_rate": (self._parse_count - self._error_count) / max(self._parse_count, 1) * 100
        }

def identify_frame(
    token: str,
    intents: int,
    properties: Optional[Dict[str, str]] = None,
    large_threshold: int = DEFAULT_LARGE_THRESHOLD
) -> dict:
    """
    Build an IDENTIFY frame (fresh login)

    Args:
        token: Bot token, with or without "Bot " prefix
        intents: Gateway intents bitmask
        properties: Connection properties (os, browser, device)
        large_threshold: Member count threshold for large guilds

    Returns:
        Frame dictionary ready for json.dumps
    """
    return {
        "op": GatewayOpcode.IDENTIFY.value,
        "d": {
            "token": authorization_token(token),
            "intents": intents,
            "properties": dict(properties or DEFAULT_PROPERTIES),
            "compress": False,
            "large_threshold": large_threshold,
        },
    }

def resume_frame(token: str, session_id: Optional[str], sequence: Optional[int]) -> dict:
    """
    Build a RESUME frame

    Raises:
        ResumeGuardFailure: token, session id or sequence missing
    """
    if not token or not session_id or sequence is None:
        raise ResumeGuardFailure("Resume needs token, session id and sequence")
    return {
        "op": GatewayOpcode.RESUME.value,
        "d": {
            "token": authorization_token(token),
            "session_id": session_id,
            "seq": sequence,
        },
    }

def heartbeat_frame(sequence: Optional[int]) -> dict:
    """Build a HEARTBEAT frame carrying the last sequence number (or null)"""
    return {"op": GatewayOpcode.HEARTBEAT.value, "d": sequence}
