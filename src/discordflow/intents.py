"""Gateway intents and role permission flags."""

from enum import IntFlag


class Intents(IntFlag):
    """Gateway intents sent with Identify."""
    GUILDS = 1 << 0
    GUILD_MEMBERS = 1 << 1
    GUILD_MODERATION = 1 << 2
    GUILD_EMOJIS_AND_STICKERS = 1 << 3
    GUILD_INTEGRATIONS = 1 << 4
    GUILD_WEBHOOKS = 1 << 5
    GUILD_INVITES = 1 << 6
    GUILD_VOICE_STATES = 1 << 7
    GUILD_PRESENCES = 1 << 8
    GUILD_MESSAGES = 1 << 9
    GUILD_MESSAGE_REACTIONS = 1 << 10
    GUILD_MESSAGE_TYPING = 1 << 11
    DIRECT_MESSAGES = 1 << 12
    DIRECT_MESSAGE_REACTIONS = 1 << 13
    DIRECT_MESSAGE_TYPING = 1 << 14
    MESSAGE_CONTENT = 1 << 15


# Non-privileged defaults plus message content
DEFAULT_INTENTS = (
    Intents.GUILDS
    | Intents.GUILD_MESSAGES
    | Intents.GUILD_MESSAGE_REACTIONS
    | Intents.DIRECT_MESSAGES
    | Intents.MESSAGE_CONTENT
)


class Permission(IntFlag):
    """Role permission bits."""
    CREATE_INSTANT_INVITE = 0x1
    KICK_MEMBERS = 0x2
    BAN_MEMBERS = 0x4
    ADMINISTRATOR = 0x8
    MANAGE_CHANNELS = 0x10
    MANAGE_GUILD = 0x20
    ADD_REACTIONS = 0x40
    VIEW_AUDIT_LOG = 0x80
    PRIORITY_SPEAKER = 0x100
    STREAM = 0x200
    VIEW_CHANNEL = 0x400
    SEND_MESSAGES = 0x800
    SEND_TTS_MESSAGES = 0x1000
    MANAGE_MESSAGES = 0x2000
    EMBED_LINKS = 0x4000
    ATTACH_FILES = 0x8000
    READ_MESSAGE_HISTORY = 0x10000
    MENTION_EVERYONE = 0x20000
    USE_EXTERNAL_EMOJIS = 0x40000
    CONNECT = 0x100000
    SPEAK = 0x200000
    MUTE_MEMBERS = 0x400000
    DEAFEN_MEMBERS = 0x800000
    MOVE_MEMBERS = 0x1000000
    USE_VAD = 0x2000000
    CHANGE_NICKNAME = 0x4000000
    MANAGE_NICKNAMES = 0x8000000
    MANAGE_ROLES = 0x10000000
    MANAGE_WEBHOOKS = 0x20000000
    MANAGE_EMOJIS = 0x40000000
