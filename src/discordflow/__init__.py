"""discordflow - asyncio client for the Discord bot API.

Public exports:
    DiscordClient: Main client class (REST + gateway)
    ClientConfig: Configuration loaded from DISCORD_* environment variables
    RateLimiter: Per-route and global REST rate limiting
    ResourceCache: Fetch-through entity cache
    Intents, Permission: Gateway intent and role permission flags

Error hierarchy:
    DiscordError (base)
    DiscordAuthError
    DiscordNotFoundError
    DiscordRateLimitError
    DiscordRequestError
    DiscordServerError
    DiscordConnectionError
    GatewayError (GatewayConnectError, InvalidSessionError, GatewayProtocolError,
                  GatewayClosedError, GatewayStateError, GatewayReconnectError,
                  EventDecodeError)

Models (Pydantic v2):
    Channel, Guild, GuildMember, Message, Role, User, etc.
"""

from .client import DiscordClient
from .config import ClientConfig, setup_logging
from .cache import ResourceCache
from .rate_limiter import RateLimiter, route_key
from .intents import DEFAULT_INTENTS, Intents, Permission
from .errors import (
    DiscordError,
    DiscordAuthError,
    DiscordNotFoundError,
    DiscordRateLimitError,
    DiscordRequestError,
    DiscordServerError,
    DiscordConnectionError,
    GatewayError,
    GatewayConnectError,
    InvalidSessionError,
    GatewayProtocolError,
    GatewayClosedError,
    GatewayStateError,
    GatewayReconnectError,
    EventDecodeError,
)
from .models import (
    Channel,
    ChannelType,
    Guild,
    GuildMember,
    Message,
    Presence,
    Role,
    User,
    VoiceState,
)

__version__ = "0.1.0"

__all__ = [
    "DiscordClient",
    "ClientConfig",
    "setup_logging",
    "ResourceCache",
    "RateLimiter",
    "route_key",
    "DEFAULT_INTENTS",
    "Intents",
    "Permission",
    "DiscordError",
    "DiscordAuthError",
    "DiscordNotFoundError",
    "DiscordRateLimitError",
    "DiscordRequestError",
    "DiscordServerError",
    "DiscordConnectionError",
    "GatewayError",
    "GatewayConnectError",
    "InvalidSessionError",
    "GatewayProtocolError",
    "GatewayClosedError",
    "GatewayStateError",
    "GatewayReconnectError",
    "EventDecodeError",
    "Channel",
    "ChannelType",
    "Guild",
    "GuildMember",
    "Message",
    "Presence",
    "Role",
    "User",
    "VoiceState",
]
