"""Structured error hierarchy for discordflow.

All client errors inherit from DiscordError, enabling uniform catch-all
handling while allowing granular recovery for specific failure modes.
REST failures carry the HTTP status and body; gateway failures carry the
close code or event tag where one applies.
"""

from typing import Optional


class DiscordError(Exception):
    """Base exception for all Discord client errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


# ---------------------------------------------------------------------------
# REST
# ---------------------------------------------------------------------------

class DiscordAuthError(DiscordError):
    """Authentication or permission error (401/403)."""
    pass


class DiscordNotFoundError(DiscordError):
    """Resource not found (404) - e.g. unknown channel or guild."""
    pass


class DiscordRateLimitError(DiscordError):
    """Rate limit exceeded (429), or a non-waiting acquire on an empty bucket."""

    def __init__(
        self,
        message: str,
        retry_after: float = 0.0,
        status_code: int = 429,
        response_body: str = "",
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.retry_after = retry_after


class DiscordRequestError(DiscordError):
    """Any other 4xx response: validation failures, bad payloads."""
    pass


class DiscordServerError(DiscordError):
    """5xx response from the API. Transient; retried before surfacing."""
    pass


class DiscordConnectionError(DiscordError):
    """Network or transport failure on a REST call."""
    pass


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class GatewayError(DiscordError):
    """Base exception for gateway (streaming connection) errors."""
    pass


class GatewayConnectError(GatewayError):
    """Dial failure or malformed/unexpected handshake frame."""
    pass


class InvalidSessionError(GatewayConnectError):
    """The gateway answered Identify/Resume with op 9."""
    pass


class GatewayProtocolError(GatewayError):
    """Unparseable frame or sequence regression in the read loop."""
    pass


class GatewayClosedError(GatewayError):
    """The socket was closed by the remote side or the network."""

    def __init__(self, message: str, close_code: Optional[int] = None):
        super().__init__(message)
        self.close_code = close_code


class GatewayStateError(GatewayError):
    """Operation not valid in the current connection state."""
    pass


class GatewayReconnectError(GatewayError):
    """All reconnect attempts after op 7/op 9/stale heartbeat failed."""
    pass


class EventDecodeError(GatewayError):
    """A dispatch payload did not match the model registered for its tag."""

    def __init__(self, message: str, tag: str = ""):
        super().__init__(message)
        self.tag = tag
