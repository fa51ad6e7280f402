"""Exceptions raised by the gateway client.

All exceptions inherit from GatewayClientError so callers can catch any
client error at the boundary. Tokens are never included in messages.
"""


class GatewayClientError(Exception):
    """Base exception for all gateway client errors."""


class DiscoveryError(GatewayClientError):
    """Raised when the gateway discovery call fails or returns no URL."""


class HandshakeError(GatewayClientError):
    """Identify or resume refused by the gateway.

    Not raised by the client: a refused handshake arrives as a non-clean
    close code and goes through the reconnect policy. Kept so callers can
    name the case when mapping close codes to errors.
    """


class TransportError(GatewayClientError):
    """Raised for socket-level failures; the following close drives state."""


class ResumeGuardFailure(GatewayClientError):
    """Raised when a resume is attempted without enough session data."""


class ConfigError(GatewayClientError):
    """Raised when stored configuration cannot be used."""
