# Session State - Resumable Gateway Session
# Holds session id, last sequence number and last gateway URL

"""
Session State Module

Responsibilities:
- Track the resumable session identity (session id, sequence, gateway URL)
- Track the last sequence number seen on the gateway
- Decide whether the stored data is enough to resume
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class SessionState:
    """Resumable gateway session identity"""
    session_id: Optional[str] = None
    sequence: Optional[int] = None
    gateway_url: Optional[str] = None

    def track_sequence(self, seq: Optional[int]) -> None:
        """
        Store the sequence number of an inbound frame

        None never overwrites a stored value. Any other number replaces it,
        a new session restarts its numbering at 1.
        """
        if seq is not None:
            self.sequence = seq

    def can_resume(self) -> bool:
        """True if session id, sequence and gateway URL are all present"""
        return (
            bool(self.session_id)
            and self.sequence is not None
            and bool(self.gateway_url)
        )

    def clear_session(self) -> None:
        """Forget session id and sequence (forces a fresh identify)"""
        self.session_id = None
        self.sequence = None

    def reset(self) -> None:
        """Forget everything, including the last gateway URL"""
        self.clear_session()
        self.gateway_url = None
