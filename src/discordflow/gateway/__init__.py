"""Discord gateway: the long-lived event WebSocket.

Public exports:
    GatewayConnection: Socket owner, handshake, read loop, reconnect
    ConnectionState: Connection lifecycle states
    Session: Session id / sequence / resume URL state
    SessionNegotiator: Sends Identify or Resume
    HeartbeatScheduler: Periodic pulse with missed-ack detection
    EventDispatcher: Tag -> (decode, callback) registry
    GatewayFrame: Wire envelope {op, d, s, t}
    GatewayOp, GatewayEvent: Opcodes and dispatch event tags

Payload models (Pydantic v2):
    Ready, GuildCreate, MessageDelete, TypingStart, etc. (see EVENT_MODELS)
"""

from .connection import ConnectionState, GatewayConnection
from .dispatcher import EventDispatcher, HandlerRegistration
from .events import EVENT_MODELS, decode_event, decoder_for
from .frames import GatewayFrame
from .heartbeat import HeartbeatScheduler
from .opcodes import GatewayEvent, GatewayOp
from .session import Session, SessionNegotiator

__all__ = [
    "GatewayConnection",
    "ConnectionState",
    "EventDispatcher",
    "HandlerRegistration",
    "EVENT_MODELS",
    "decode_event",
    "decoder_for",
    "GatewayFrame",
    "HeartbeatScheduler",
    "GatewayEvent",
    "GatewayOp",
    "Session",
    "SessionNegotiator",
]
