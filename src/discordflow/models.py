"""Pydantic v2 models for Discord API entities.

Typed models for REST responses and gateway payloads. All fields use
snake_case matching Discord's API convention; unknown fields are kept.

Top-level entities can be bound to the owning DiscordClient (a plain
back-reference, not a copy) so bound operations such as Channel.send()
can make REST calls.
"""

from __future__ import annotations

import copy
from datetime import datetime
from enum import IntEnum, IntFlag
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .errors import DiscordError
from .intents import Permission

if TYPE_CHECKING:
    from .client import DiscordClient


class DiscordModel(BaseModel):
    """Base for every entity: tolerant parsing plus a client back-reference."""

    model_config = ConfigDict(extra="allow")

    _client: Optional["DiscordClient"] = PrivateAttr(default=None)

    def bind(self, client: "DiscordClient") -> "DiscordModel":
        self._client = client
        return self

    @property
    def client(self) -> "DiscordClient":
        if self._client is None:
            raise DiscordError(f"{type(self).__name__} is not bound to a client")
        return self._client

    @property
    def is_bound(self) -> bool:
        return self._client is not None

    def snapshot(self) -> "DiscordModel":
        """Deep copy that shares (does not copy) the bound client."""
        memo: Dict[int, Any] = {}
        if self._client is not None:
            memo[id(self._client)] = self._client
        return copy.deepcopy(self, memo)


# ---------------------------------------------------------------------------
# Users & roles
# ---------------------------------------------------------------------------

class User(DiscordModel):
    id: str
    username: str = ""
    discriminator: str = ""
    global_name: Optional[str] = None
    avatar: Optional[str] = None
    bot: bool = False
    premium_type: int = 0


class Role(DiscordModel):
    id: str
    name: str = ""
    color: int = 0
    hoist: bool = False
    position: int = 0
    permissions: int = 0
    managed: bool = False
    mentionable: bool = False

    def has(self, perm: Permission) -> bool:
        return self.permissions & int(perm) == int(perm)


# ---------------------------------------------------------------------------
# Channels & messages
# ---------------------------------------------------------------------------

class ChannelType(IntEnum):
    GUILD_TEXT = 0
    DM = 1
    GUILD_VOICE = 2
    GROUP_DM = 3
    GUILD_CATEGORY = 4
    GUILD_NEWS = 5
    GUILD_STORE = 6


class Overwrite(DiscordModel):
    """Permission overwrite on a channel."""
    id: str
    type: int = 0  # 0 role, 1 member
    allow: int = 0
    deny: int = 0


class Attachment(DiscordModel):
    id: str
    filename: str = ""
    size: int = 0
    url: str = ""
    proxy_url: str = ""
    height: Optional[int] = None
    width: Optional[int] = None


class Embed(DiscordModel):
    title: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    timestamp: Optional[datetime] = None
    color: Optional[int] = None


class Emoji(DiscordModel):
    id: Optional[str] = None
    name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    user: Optional[User] = None
    require_colons: bool = False
    managed: bool = False
    animated: bool = False


class Reaction(DiscordModel):
    count: int = 0
    me: bool = False
    emoji: Emoji = Field(default_factory=Emoji)


class Message(DiscordModel):
    id: str
    channel_id: str = ""
    guild_id: Optional[str] = None
    author: Optional[User] = None
    content: str = ""
    timestamp: Optional[datetime] = None
    edited_timestamp: Optional[datetime] = None
    tts: bool = False
    mention_everyone: bool = False
    mentions: List[User] = Field(default_factory=list)
    mention_roles: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    embeds: List[Embed] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    nonce: Optional[Any] = None
    pinned: bool = False
    webhook_id: Optional[str] = None
    type: int = 0
    flags: int = 0

    async def reply(self, content: str) -> "Message":
        """Send a message to the channel this message was posted in."""
        return await self.client.send_message(self.channel_id, content)


class Channel(DiscordModel):
    id: str
    type: int = ChannelType.GUILD_TEXT
    guild_id: Optional[str] = None
    position: int = 0
    permission_overwrites: List[Overwrite] = Field(default_factory=list)
    name: Optional[str] = None
    topic: Optional[str] = None
    nsfw: bool = False
    last_message_id: Optional[str] = None
    bitrate: int = 0
    user_limit: int = 0
    rate_limit_per_user: int = 0
    recipients: List[User] = Field(default_factory=list)
    icon: Optional[str] = None
    owner_id: Optional[str] = None
    application_id: Optional[str] = None
    parent_id: Optional[str] = None
    last_pin_timestamp: Optional[datetime] = None

    async def send(self, content: str) -> Message:
        """Send a text message to this channel."""
        if not content:
            raise ValueError("cannot send empty message")
        return await self.client.send_message(self.id, content)

    async def messages(self, limit: Optional[int] = None) -> List[Message]:
        """Most recent messages in the channel (newest first)."""
        return await self.client.get_channel_messages(self.id, limit=limit)


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------

class ActivityType(IntEnum):
    GAME = 0
    STREAMING = 1
    LISTENING = 2
    WATCHING = 3
    CUSTOM = 4
    COMPETING = 5


class ActivityFlag(IntFlag):
    INSTANCE = 1 << 0
    JOIN = 1 << 1
    SPECTATE = 1 << 2
    JOIN_REQUEST = 1 << 3
    SYNC = 1 << 4
    PLAY = 1 << 5


class ActivityTimestamps(DiscordModel):
    start: Optional[int] = None
    end: Optional[int] = None


class ActivityParty(DiscordModel):
    id: Optional[str] = None
    size: List[int] = Field(default_factory=list)


class ActivityAssets(DiscordModel):
    large_image: Optional[str] = None
    large_text: Optional[str] = None
    small_image: Optional[str] = None
    small_text: Optional[str] = None


class ActivitySecrets(DiscordModel):
    join: Optional[str] = None
    spectate: Optional[str] = None
    match: Optional[str] = None


class Activity(DiscordModel):
    name: str = ""
    type: int = ActivityType.GAME
    url: Optional[str] = None
    timestamps: Optional[ActivityTimestamps] = None
    application_id: Optional[str] = None
    details: Optional[str] = None
    state: Optional[str] = None
    party: Optional[ActivityParty] = None
    assets: Optional[ActivityAssets] = None
    secrets: Optional[ActivitySecrets] = None
    instance: bool = False
    flags: int = 0


class ClientStatus(DiscordModel):
    desktop: Optional[str] = None
    mobile: Optional[str] = None
    web: Optional[str] = None


class Presence(DiscordModel):
    user: User
    guild_id: Optional[str] = None
    status: str = ""
    activities: List[Activity] = Field(default_factory=list)
    client_status: ClientStatus = Field(default_factory=ClientStatus)


# ---------------------------------------------------------------------------
# Guilds
# ---------------------------------------------------------------------------

class GuildMember(DiscordModel):
    user: Optional[User] = None
    guild_id: Optional[str] = None
    nick: Optional[str] = None
    roles: List[str] = Field(default_factory=list)  # role ids
    joined_at: Optional[datetime] = None
    premium_since: Optional[datetime] = None
    deaf: bool = False
    mute: bool = False

    @property
    def id(self) -> Optional[str]:
        return self.user.id if self.user else None

    def resolved_roles(self) -> List[Role]:
        """Role objects for this member's role ids, from the client's role table."""
        known = self.client.roles
        return [known.get(role_id) or Role(id=role_id) for role_id in self.roles]

    def has_permission(self, perm: Permission) -> bool:
        """True if any of the member's roles grants every bit of perm."""
        return any(role.has(perm) for role in self.resolved_roles())

    async def add_role(self, role_id: str) -> None:
        """Give the member a role that exists on their guild."""
        if not self.guild_id or self.id is None:
            raise DiscordError("guild member is missing guild_id or user")

        guild = await self.client.get_guild(self.guild_id)
        if guild.get_role(role_id) is None:
            raise DiscordError("role not found on this server")

        roles = list(self.roles)
        if role_id not in roles:
            roles.append(role_id)
        await self.client.modify_guild_member(self.guild_id, self.id, roles=roles)
        self.roles = roles


class VoiceState(DiscordModel):
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    user_id: str = ""
    session_id: str = ""
    deaf: bool = False
    mute: bool = False
    self_deaf: bool = False
    self_mute: bool = False
    suppress: bool = False


class Guild(DiscordModel):
    id: str
    name: str = ""
    icon: Optional[str] = None
    owner: bool = False
    owner_id: Optional[str] = None
    permissions: Optional[int] = None
    region: Optional[str] = None
    afk_channel_id: Optional[str] = None
    afk_timeout: int = 0
    verification_level: int = 0
    default_message_notifications: int = 0
    explicit_content_filter: int = 0
    roles: List[Role] = Field(default_factory=list)
    emojis: List[Emoji] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    mfa_level: int = 0
    application_id: Optional[str] = None
    widget_enabled: bool = False
    widget_channel_id: Optional[str] = None
    system_channel_id: Optional[str] = None
    max_presences: Optional[int] = None
    max_members: Optional[int] = None
    vanity_url_code: Optional[str] = None
    description: Optional[str] = None
    banner: Optional[str] = None
    premium_tier: int = 0
    premium_subscription_count: int = 0
    preferred_locale: str = "en-US"

    def get_role(self, role_id: str) -> Optional[Role]:
        for role in self.roles:
            if role.id == role_id:
                return role
        return None

    async def fetch_members(self, limit: Optional[int] = None) -> List[GuildMember]:
        """List guild members (requires the GUILD_MEMBERS intent on the app)."""
        return await self.client.get_guild_members(self.id, limit=limit)

    async def fetch_member(self, user_id: str) -> GuildMember:
        return await self.client.get_guild_member(self.id, user_id)
