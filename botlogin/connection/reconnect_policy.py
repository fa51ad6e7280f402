# Reconnect Policy - Close Classification and Backoff
# Decides what happens after the gateway socket closes

"""
Reconnect Policy Module

Responsibilities:
- Classify close codes (clean vs. retryable)
- Count reconnect attempts since the last READY
- Compute bounded exponential backoff (no jitter)
- Signal exhaustion after the maximum number of attempts

On close with code C:
1. C == 1000 or stopping flag set -> STOP (reset, no retry)
2. attempts < max_attempts        -> RETRY after min(base * 2^attempt, cap)
3. otherwise                      -> GIVE_UP (terminal notice, reset)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..utils.helpers import backoff_delay_ms
from ..utils.logger import setup_logger

CLEAN_CLOSE_CODE = 1000
ABNORMAL_CLOSE_CODE = 1006

# Known gateway close codes, for logging only
GATEWAY_CLOSE_CODES = {
    1000: "Normal closure",
    1001: "Going away",
    1006: "Abnormal closure",
    4000: "Unknown error",
    4001: "Unknown opcode",
    4002: "Decode error",
    4003: "Not authenticated",
    4004: "Authentication failed",
    4005: "Already authenticated",
    4007: "Invalid seq",
    4008: "Rate limited",
    4009: "Session timed out",
    4010: "Invalid shard",
    4011: "Sharding required",
    4012: "Invalid API version",
    4013: "Invalid intent(s)",
    4014: "Disallowed intent(s)",
}


class ReconnectAction(Enum):
    """What to do after a socket close"""
    STOP = "stop"
    RETRY = "retry"
    GIVE_UP = "give_up"


@dataclass
class ReconnectDecision:
    """Result of classifying a close"""
    action: ReconnectAction
    code: Optional[int]
    attempt: int = 0
    delay_ms: int = 0

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000


def describe_close_code(code: Optional[int]) -> str:
    """Human readable close code, e.g. "4004 (Authentication failed)" """
    if code is None:
        return "no close code"
    meaning = GATEWAY_CLOSE_CODES.get(code)
    return f"{code} ({meaning})" if meaning else str(code)


class ReconnectPolicy:
    """
    Bounded exponential backoff for gateway reconnects

    The attempt counter persists across connection attempts and is only
    reset by a successful READY (or RESUMED) or a full state reset.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000
    ):
        """
        Initialize reconnect policy

        Args:
            max_attempts: Retries allowed before giving up
            base_delay_ms: Backoff base in milliseconds
            max_delay_ms: Backoff cap in milliseconds
        """
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.attempts = 0
        self.logger = setup_logger("ReconnectPolicy", "INFO")

    def on_close(self, code: Optional[int], stopping: bool = False) -> ReconnectDecision:
        """
        Classify a socket close and advance the attempt counter

        Args:
            code: Close code reported by the transport (None if unknown)
            stopping: True if the close was requested locally

        Returns:
            ReconnectDecision
        """
        if code == CLEAN_CLOSE_CODE or stopping:
            self.logger.info(f"Clean close: {describe_close_code(code)}")
            return ReconnectDecision(ReconnectAction.STOP, code)

        if self.attempts < self.max_attempts:
            self.attempts += 1
            delay_ms = self.delay_for(self.attempts)
            self.logger.warning(
                f"Gateway closed: {describe_close_code(code)} - "
                f"reconnecting in {delay_ms}ms (attempt {self.attempts}/{self.max_attempts})"
            )
            return ReconnectDecision(ReconnectAction.RETRY, code, self.attempts, delay_ms)

        self.logger.error(
            f"Gateway closed: {describe_close_code(code)} - "
            f"max reconnect attempts ({self.max_attempts}) reached"
        )
        return ReconnectDecision(ReconnectAction.GIVE_UP, code, self.attempts)

    def delay_for(self, attempt: int) -> int:
        """Backoff delay in milliseconds for the given attempt number"""
        return backoff_delay_ms(attempt, self.base_delay_ms, self.max_delay_ms)

    def reset(self):
        """Reset the attempt counter (successful handshake or full reset)"""
        if self.attempts:
            self.logger.debug(f"Reconnect counter reset (was {self.attempts})")
        self.attempts = 0
