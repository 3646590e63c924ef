"""DiscordClient - REST + gateway client for a Discord bot.

Single class owning one bot's session state: the gateway connection, the
handler registry, the channel and guild caches and the role table. Uses httpx
for REST, websockets for the gateway, Pydantic v2 for typed entities and
aiolimiter for rate limiting.

Usage:
    client = DiscordClient.from_env()

    async def on_message(client, message):
        if message.content == "ping":
            await message.reply("pong")

    client.handle("MESSAGE_CREATE", on_message)
    await client.connect()
    await client.listen()
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from .cache import ResourceCache
from .config import ClientConfig
from .gateway.connection import ConnectionState, GatewayConnection
from .gateway.dispatcher import EventCallback, EventDispatcher
from .gateway.events import GuildCreate
from .gateway.opcodes import GatewayEvent
from .gateway.session import Session, SessionNegotiator
from .models import Channel, Guild, GuildMember, Message, Role, User
from .rate_limiter import RateLimiter
from .rest import RestClient

logger = logging.getLogger("discordflow.client")

_OPEN_STATES = (
    ConnectionState.AWAITING_HELLO,
    ConnectionState.NEGOTIATING,
    ConnectionState.CONNECTED,
    ConnectionState.RECONNECTING,
)


class DiscordClient:
    """Discord bot client with typed REST helpers and a gateway event feed."""

    def __init__(
        self,
        token: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            token: Bot token. Ignored when config is given.
            config: Full client configuration.
            transport: Optional httpx transport for the REST client.
        """
        if config is None:
            config = ClientConfig(token=token or "")
        self.config = config

        self.session = Session(token=config.token)
        self.roles: Dict[str, Role] = {}

        self._limiter = RateLimiter(global_rate=config.global_rate)
        self.rest = RestClient(
            token=config.token,
            api_url=config.api_url,
            limiter=self._limiter,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            transport=transport,
        )

        self.dispatcher = EventDispatcher(client=self, isolate_errors=config.isolate_handler_errors)
        self.dispatcher.add_hook(GatewayEvent.GUILD_CREATE, self._on_guild_create)

        self.gateway = GatewayConnection(
            gateway_url=config.gateway_url,
            session=self.session,
            negotiator=SessionNegotiator(self.session, config.intents, config.client_name),
            dispatcher=self.dispatcher,
            connect_timeout=config.connect_timeout,
            handshake_timeout=config.handshake_timeout,
            max_message_size=config.max_message_size,
            max_reconnect_attempts=config.max_reconnect_attempts,
            base_reconnect_delay=config.base_reconnect_delay,
            max_reconnect_delay=config.max_reconnect_delay,
        )

        self.channels: ResourceCache[Channel] = ResourceCache("channel", self._fetch_channel, client=self)
        self.guilds: ResourceCache[Guild] = ResourceCache("guild", self._fetch_guild, client=self)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "DiscordClient":
        """Create a client from DISCORD_* environment variables."""
        return cls(config=ClientConfig.from_env(env_file))

    @property
    def user(self) -> Optional[User]:
        """Bot user from READY (None before the first identify)."""
        return self.session.user

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the gateway and complete the handshake."""
        await self.gateway.connect()
        logger.info("DiscordClient connected")

    async def listen(self) -> None:
        """Process gateway events until close() or a fatal error."""
        await self.gateway.listen()

    def handle(self, tag: str, callback: EventCallback, decode: Optional[Callable[[Any], Any]] = None) -> None:
        """Register callback(client, event) for an event tag, replacing any previous one."""
        self.dispatcher.register(tag, callback, decode=decode)

    async def close(self) -> None:
        """Close the gateway. Raises GatewayStateError when not open."""
        await self.gateway.close()
        logger.info("DiscordClient disconnected")

    async def aclose(self) -> None:
        """Close the gateway if open and release the HTTP client."""
        if self.gateway.state in _OPEN_STATES:
            await self.close()
        await self.rest.aclose()

    async def __aenter__(self) -> "DiscordClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Cached lookups
    # ------------------------------------------------------------------

    async def get_channel(self, channel_id: str) -> Channel:
        """Channel by id, fetched once then served from cache."""
        return await self.channels.get(channel_id)

    async def get_guild(self, guild_id: str) -> Guild:
        """Guild by id, fetched once then served from cache."""
        return await self.guilds.get(guild_id)

    async def _fetch_channel(self, channel_id: str) -> Channel:
        data = await self.rest.request("GET", f"/channels/{channel_id}")
        return Channel.model_validate(data)

    async def _fetch_guild(self, guild_id: str) -> Guild:
        data = await self.rest.request("GET", f"/guilds/{guild_id}")
        guild = Guild.model_validate(data)
        self._record_roles(guild.roles)
        return guild

    def _record_roles(self, roles: List[Role]) -> None:
        for role in roles:
            self.roles[role.id] = role

    def _on_guild_create(self, event: GuildCreate) -> None:
        guild = Guild.model_validate(event.model_dump(include=set(Guild.model_fields)))
        self.guilds.add(guild)
        self._record_roles(guild.roles)
        for channel in event.channels:
            if channel.guild_id is None:
                channel.guild_id = guild.id
            self.channels.add(channel)
        logger.debug(f"Cached guild {guild.id} with {len(event.channels)} channels")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, channel_id: str, content: str) -> Message:
        """POST /channels/{id}/messages."""
        if not content:
            raise ValueError("cannot send empty message")
        data = await self.rest.request("POST", f"/channels/{channel_id}/messages", json={"content": content})
        return Message.model_validate(data).bind(self)

    async def get_channel_messages(self, channel_id: str, limit: Optional[int] = None) -> List[Message]:
        """GET /channels/{id}/messages. Newest first."""
        params = {"limit": limit} if limit else None
        data = await self.rest.request("GET", f"/channels/{channel_id}/messages", params=params)
        return [Message.model_validate(m).bind(self) for m in data or []]

    # ------------------------------------------------------------------
    # Guild members
    # ------------------------------------------------------------------

    async def get_guild_members(self, guild_id: str, limit: Optional[int] = None) -> List[GuildMember]:
        """GET /guilds/{id}/members."""
        params = {"limit": limit} if limit else None
        data = await self.rest.request("GET", f"/guilds/{guild_id}/members", params=params)
        return [self._member(m, guild_id) for m in data or []]

    async def get_guild_member(self, guild_id: str, user_id: str) -> GuildMember:
        """GET /guilds/{id}/members/{user_id}."""
        data = await self.rest.request("GET", f"/guilds/{guild_id}/members/{user_id}")
        return self._member(data, guild_id)

    async def modify_guild_member(self, guild_id: str, user_id: str, **fields: Any) -> None:
        """PATCH /guilds/{id}/members/{user_id} with the given fields (roles, nick, ...)."""
        await self.rest.request("PATCH", f"/guilds/{guild_id}/members/{user_id}", json=fields)

    def _member(self, data: Dict[str, Any], guild_id: str) -> GuildMember:
        member = GuildMember.model_validate(data)
        if member.guild_id is None:
            member.guild_id = guild_id
        member.bind(self)
        return member
