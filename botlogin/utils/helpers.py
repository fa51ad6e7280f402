# Helpers - Utility Functions
# Token and URL handling shared by the gateway client, config store and API

"""
Helpers Module

Provides utility functions for:
- Bot token normalization (prefix handling)
- Token masking for logs and API responses
- Gateway socket URL construction
- Backoff delay calculation
"""

from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

TOKEN_PREFIX = "Bot "
SECURE_SOCKET_SCHEME = "wss://"

def strip_token_prefix(token: str) -> str:
    """
    Remove the "Bot " prefix and surrounding whitespace from a token

    Tokens are stored bare so the prefix is only ever added once, at send time.

    Args:
        token: Raw token as typed by the operator

    Returns:
        Bare token ("" for None)
    """
    if not token:
        return ""
    token = token.lstrip()
    while token.startswith(TOKEN_PREFIX):
        token = token[len(TOKEN_PREFIX):].lstrip()
    return token.strip()

def authorization_token(token: str) -> str:
    """
    Return the token in the form the gateway expects (exactly one "Bot " prefix)

    Args:
        token: Bare or already prefixed token

    Returns:
        "Bot <token>"
    """
    return f"{TOKEN_PREFIX}{strip_token_prefix(token)}"

def mask_token(token: str) -> str:
    """
    Mask a token for logs and API output

    Args:
        token: Token to mask

    Returns:
        Masked string (e.g., "MTIz...xYz9"), "" if no token
    """
    token = strip_token_prefix(token)
    if not token:
        return ""
    if len(token) <= 10:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"

def build_gateway_url(url: str, version: int = 10, encoding: str = "json") -> str:
    """
    Normalize a discovered gateway URL into the socket URL

    Adds the secure socket scheme when missing and sets the protocol version
    and encoding query parameters (existing values are replaced).

    Args:
        url: Gateway URL from discovery (e.g., "wss://gateway.discord.gg")
        version: Gateway API version
        encoding: Payload encoding

    Returns:
        Full socket URL (e.g., "wss://gateway.discord.gg?v=10&encoding=json")
    """
    if not url.startswith(SECURE_SOCKET_SCHEME):
        url = SECURE_SOCKET_SCHEME + url.split("://", 1)[-1]

    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    query["v"] = str(version)
    query["encoding"] = encoding
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

def backoff_delay_ms(attempt: int, base_ms: int = 1000, max_ms: int = 30000) -> int:
    """
    Exponential backoff without jitter

    Args:
        attempt: Attempt number (1 for the first retry)
        base_ms: Base delay in milliseconds
        max_ms: Upper bound in milliseconds

    Returns:
        min(base_ms * 2^attempt, max_ms)
    """
    return min(base_ms * (2 ** attempt), max_ms)
