"""Typed dispatch event payloads.

One model per event tag (a closed tagged union): the tag of an op 0 frame
selects the model its payload is validated into. Entity events reuse the
entity models; the rest get a small payload model here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from ..errors import EventDecodeError
from .opcodes import GatewayEvent
from ..models import (
    Channel,
    DiscordModel,
    Emoji,
    Guild,
    GuildMember,
    Message,
    Presence,
    Role,
    User,
    VoiceState,
)

DecodeFn = Callable[[Any], Any]


class UnavailableGuild(DiscordModel):
    id: str
    unavailable: bool = False


class Ready(DiscordModel):
    v: int = 0
    user: User
    session_id: str
    resume_gateway_url: Optional[str] = None
    guilds: List[UnavailableGuild] = Field(default_factory=list)


class Resumed(DiscordModel):
    pass


class ChannelPinsUpdate(DiscordModel):
    guild_id: Optional[str] = None
    channel_id: str
    last_pin_timestamp: Optional[datetime] = None


class GuildCreate(Guild):
    """GUILD_CREATE carries the full guild plus members, channels and presences."""
    joined_at: Optional[datetime] = None
    large: bool = False
    unavailable: bool = False
    member_count: int = 0
    voice_states: List[VoiceState] = Field(default_factory=list)
    members: List[GuildMember] = Field(default_factory=list)
    channels: List[Channel] = Field(default_factory=list)
    presences: List[Presence] = Field(default_factory=list)


class GuildBan(DiscordModel):
    guild_id: str
    user: User


class GuildEmojisUpdate(DiscordModel):
    guild_id: str
    emojis: List[Emoji] = Field(default_factory=list)


class GuildIntegrationsUpdate(DiscordModel):
    guild_id: str


class GuildMemberRemove(DiscordModel):
    guild_id: str
    user: User


class GuildMemberUpdate(DiscordModel):
    guild_id: str
    roles: List[str] = Field(default_factory=list)
    user: User
    nick: Optional[str] = None


class GuildMembersChunk(DiscordModel):
    guild_id: str
    members: List[GuildMember] = Field(default_factory=list)
    chunk_index: int = 0
    chunk_count: int = 1


class GuildRoleEvent(DiscordModel):
    guild_id: str
    role: Role


class GuildRoleDelete(DiscordModel):
    guild_id: str
    role_id: str


class MessageDelete(DiscordModel):
    id: str
    channel_id: str
    guild_id: Optional[str] = None


class MessageDeleteBulk(DiscordModel):
    ids: List[str]
    channel_id: str
    guild_id: Optional[str] = None


class MessageReaction(DiscordModel):
    user_id: str
    channel_id: str
    message_id: str
    guild_id: Optional[str] = None
    emoji: Emoji = Field(default_factory=Emoji)


class MessageReactionRemoveAll(DiscordModel):
    channel_id: str
    message_id: str
    guild_id: Optional[str] = None


class TypingStart(DiscordModel):
    channel_id: str
    guild_id: Optional[str] = None
    user_id: str
    timestamp: int = 0


class VoiceServerUpdate(DiscordModel):
    token: str
    guild_id: str
    endpoint: Optional[str] = None


class WebhooksUpdate(DiscordModel):
    guild_id: str
    channel_id: str


EVENT_MODELS: Dict[GatewayEvent, Type[BaseModel]] = {
    GatewayEvent.READY: Ready,
    GatewayEvent.RESUMED: Resumed,
    GatewayEvent.CHANNEL_CREATE: Channel,
    GatewayEvent.CHANNEL_UPDATE: Channel,
    GatewayEvent.CHANNEL_DELETE: Channel,
    GatewayEvent.CHANNEL_PINS_UPDATE: ChannelPinsUpdate,
    GatewayEvent.GUILD_CREATE: GuildCreate,
    GatewayEvent.GUILD_UPDATE: Guild,
    GatewayEvent.GUILD_DELETE: UnavailableGuild,
    GatewayEvent.GUILD_BAN_ADD: GuildBan,
    GatewayEvent.GUILD_BAN_REMOVE: GuildBan,
    GatewayEvent.GUILD_EMOJIS_UPDATE: GuildEmojisUpdate,
    GatewayEvent.GUILD_INTEGRATIONS_UPDATE: GuildIntegrationsUpdate,
    GatewayEvent.GUILD_MEMBER_ADD: GuildMember,
    GatewayEvent.GUILD_MEMBER_REMOVE: GuildMemberRemove,
    GatewayEvent.GUILD_MEMBER_UPDATE: GuildMemberUpdate,
    GatewayEvent.GUILD_MEMBERS_CHUNK: GuildMembersChunk,
    GatewayEvent.GUILD_ROLE_CREATE: GuildRoleEvent,
    GatewayEvent.GUILD_ROLE_UPDATE: GuildRoleEvent,
    GatewayEvent.GUILD_ROLE_DELETE: GuildRoleDelete,
    GatewayEvent.MESSAGE_CREATE: Message,
    GatewayEvent.MESSAGE_UPDATE: Message,
    GatewayEvent.MESSAGE_DELETE: MessageDelete,
    GatewayEvent.MESSAGE_DELETE_BULK: MessageDeleteBulk,
    GatewayEvent.MESSAGE_REACTION_ADD: MessageReaction,
    GatewayEvent.MESSAGE_REACTION_REMOVE: MessageReaction,
    GatewayEvent.MESSAGE_REACTION_REMOVE_ALL: MessageReactionRemoveAll,
    GatewayEvent.PRESENCE_UPDATE: Presence,
    GatewayEvent.TYPING_START: TypingStart,
    GatewayEvent.USER_UPDATE: User,
    GatewayEvent.VOICE_STATE_UPDATE: VoiceState,
    GatewayEvent.VOICE_SERVER_UPDATE: VoiceServerUpdate,
    GatewayEvent.WEBHOOKS_UPDATE: WebhooksUpdate,
}


def decoder_for(tag: str) -> Optional[DecodeFn]:
    """The default decode routine for an event tag, if the tag is known."""
    try:
        model = EVENT_MODELS[GatewayEvent(tag)]
    except ValueError:
        return None
    return model.model_validate


def decode_event(tag: str, payload: Any) -> Any:
    """Validate a dispatch payload into the model registered for its tag.

    Raises:
        EventDecodeError: Unknown tag or payload does not match the model.
    """
    decode = decoder_for(tag)
    if decode is None:
        raise EventDecodeError(f"No payload model for event {tag}", tag=tag)
    try:
        return decode(payload)
    except ValidationError as e:
        raise EventDecodeError(f"Failed to decode {tag} payload: {e}", tag=tag) from e
